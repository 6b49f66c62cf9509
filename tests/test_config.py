import json

import pytest

from meshdrop.config import EXAMPLE_CONFIG, Config, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ('RELAY_URL', 'KEY_PROVIDER_URL', 'CHUNK_SIZE', 'ICE_SERVERS',
                 'ACCELERATED_XOR', 'API_PORT', 'LOG_LEVEL'):
        monkeypatch.delenv(f'MESHDROP_{name}', raising=False)


def test_defaults():
    config = Config()
    assert config.chunk_size == 16_384
    assert config.link_scheme == 'zkv'
    assert config.request_timeout == 5.0
    assert config.accelerated_xor


def test_from_env(monkeypatch):
    monkeypatch.setenv('MESHDROP_RELAY_URL', 'wss://relay.example')
    monkeypatch.setenv('MESHDROP_ICE_SERVERS', 'stun:a:1, stun:b:2,')
    monkeypatch.setenv('MESHDROP_CHUNK_SIZE', '8192')
    monkeypatch.setenv('MESHDROP_ACCELERATED_XOR', 'false')

    config = Config.from_env()
    assert config.relay_url == 'wss://relay.example'
    assert config.ice_servers == ['stun:a:1', 'stun:b:2']
    assert config.chunk_size == 8192
    assert not config.accelerated_xor


def test_from_missing_file_gives_defaults(tmp_path):
    assert Config.from_file(tmp_path / 'nope.json') == Config()


def test_save_and_reload(tmp_path):
    config = Config(relay_url='wss://r', request_batch=3, yield_every=1, api_port=9000)
    path = tmp_path / 'config.json'
    config.save(path)

    assert json.loads(path.read_text())['request_batch'] == 3
    assert Config.from_file(path) == config


def test_example_config_is_loadable(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text(EXAMPLE_CONFIG)
    config = Config.from_file(path)
    assert config.relay_url == 'wss://relay.meshdrop.dev'
    assert config.ice_servers == ['stun:stun.l.google.com:19302']


def test_env_overrides_file(monkeypatch, tmp_path):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps({'relay_url': 'wss://from-file', 'chunk_size': 4096}))
    monkeypatch.setenv('MESHDROP_RELAY_URL', 'wss://from-env')

    config = load_config(path)
    assert config.relay_url == 'wss://from-env'
    assert config.chunk_size == 4096
