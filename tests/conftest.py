import pytest

from meshdrop.config import Config
from meshdrop.crypto import set_backend
from meshdrop.orchestrator import TransferOrchestrator

from .fakes import FakeKeyProvider, FakeNetwork, MemoryRelayHub


@pytest.fixture
def config():
    return Config(
        relay_url='wss://relay.test',
        key_provider_url='wss://keys.test',
        ice_servers=[],
        request_timeout=0.5,
        maintenance_interval=0.01,
        backpressure_poll=0.001,
    )


@pytest.fixture
def hub():
    return MemoryRelayHub()


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def key_provider(config):
    return FakeKeyProvider(chunk_size=config.chunk_size)


@pytest.fixture
def make_orchestrator(config, hub, network, key_provider):
    """Orchestrators sharing one relay, one peer network and one key provider."""
    def make(**overrides):
        return TransferOrchestrator(
            overrides.get('config', config),
            relay_connector=overrides.get('hub', hub).connect,
            key_connector=overrides.get('key_provider', key_provider).connect,
            connection_factory=overrides.get('network', network),
        )
    return make


@pytest.fixture(autouse=True)
def reset_xor_backend():
    yield
    set_backend('numpy')


@pytest.fixture
def sample_file(tmp_path):
    """A 1,000,000-byte file: 61 full 16KB chunks plus one of 576 bytes."""
    data = bytes((i * 31 + 7) % 251 for i in range(1_000_000))
    path = tmp_path / 'sample.bin'
    path.write_bytes(data)
    return path
