"""
Node settings.

Values come from three layers, later ones winning: the dataclass defaults,
an optional ``config.json`` and ``MESHDROP_*`` environment variables (a
``.env`` file in the working directory is read into the environment first).
"""

import os
from pathlib import Path
from dataclasses import asdict, dataclass, field, fields, replace
from typing import List, Optional
import json

from dotenv import load_dotenv


DEFAULT_CHUNK_SIZE = 16 * 1024  # one keystream frame from the key provider


def _flag(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(',') if item.strip()]


# Settings that may be overridden from the environment, with their parsers
ENV_SETTINGS = {
    'relay_url': str,
    'key_provider_url': str,
    'link_scheme': str,
    'ice_servers': _csv,
    'chunk_size': int,
    'request_timeout': float,
    'buffer_high_water': int,
    'accelerated_xor': _flag,
    'api_host': str,
    'api_port': int,
    'log_level': str,
}


@dataclass
class Config:
    """Everything a swarm node can be tuned with."""
    # Endpoints
    relay_url: str = 'wss://relay.meshdrop.dev'
    key_provider_url: str = 'wss://keys.meshdrop.dev'
    link_scheme: str = 'zkv'
    ice_servers: List[str] = field(default_factory=lambda: [
        'stun:stun.l.google.com:19302',
        'stun:stun1.l.google.com:19302',
    ])

    chunk_size: int = DEFAULT_CHUNK_SIZE

    # Scheduling
    request_timeout: float = 5.0
    request_batch: int = 10
    announce_every: int = 10
    announce_batch: int = 500
    maintenance_interval: float = 1.0

    # Flow control
    buffer_high_water: int = 1024 * 1024
    backpressure_poll: float = 0.05
    yield_every: int = 10

    accelerated_xor: bool = True

    api_host: str = '127.0.0.1'
    api_port: int = 8080

    log_level: str = 'INFO'

    @classmethod
    def from_env(cls, base: Optional['Config'] = None) -> 'Config':
        """Apply any ``MESHDROP_*`` variables on top of ``base`` (or defaults)."""
        load_dotenv()

        overrides = {}
        for name, parse in ENV_SETTINGS.items():
            raw = os.getenv(f'MESHDROP_{name.upper()}')
            if raw:
                overrides[name] = parse(raw)

        return replace(base or cls(), **overrides)

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Read a JSON settings file. Unknown keys are ignored, a missing file gives defaults."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        known = {f.name for f in fields(cls)}
        config = cls(**{key: value for key, value in data.items() if key in known})
        config.ice_servers = list(config.ice_servers)
        return config

    def to_dict(self) -> dict:
        return asdict(self)

    def save(self, path: Path):
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(config_path: Optional[Path] = None) -> Config:
    """The file at ``config_path`` (if any) with the environment layered over it."""
    base = Config.from_file(config_path) if config_path else Config()
    return Config.from_env(base)


EXAMPLE_CONFIG = """
{
  "relay_url": "wss://relay.meshdrop.dev",
  "key_provider_url": "wss://keys.meshdrop.dev",
  "link_scheme": "zkv",
  "ice_servers": ["stun:stun.l.google.com:19302"],
  "chunk_size": 16384,
  "request_timeout": 5.0,
  "buffer_high_water": 1048576,
  "accelerated_xor": true,
  "api_port": 8080,
  "log_level": "INFO"
}
"""
