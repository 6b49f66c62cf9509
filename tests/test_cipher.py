import secrets

import pytest

from meshdrop.crypto import (
    KeystreamProvider, SplitKeyCipher, combine, decode_key_slice, encode_key_slice,
    generate_local_keystream, get_backend, set_backend, xor_numpy, xor_python,
)
from meshdrop.crypto import xor
from meshdrop.exceptions import KeyAcquisitionError

from .fakes import FakeKeyProvider


def test_combine_round_trip():
    data = secrets.token_bytes(1000)
    a = secrets.token_bytes(1000)
    b = secrets.token_bytes(1000)
    assert combine(combine(data, a, b), a, b) == data
    assert combine(data, a, b) != data


def test_backends_are_bit_identical():
    for length in (0, 1, 7, 576, 16_384):
        data = secrets.token_bytes(length)
        a = secrets.token_bytes(length)
        b = secrets.token_bytes(length)
        assert xor_numpy(data, a, b) == xor_python(data, a, b)


def test_short_keys_count_as_zero():
    data = b'\x0f' * 8
    a = b'\xff' * 3
    b = b''
    expected = b'\xf0' * 3 + b'\x0f' * 5
    assert xor_python(data, a, b) == expected
    assert xor_numpy(data, a, b) == expected


def test_output_length_follows_data():
    data = b'abc'
    a = secrets.token_bytes(16)
    b = secrets.token_bytes(16)
    assert len(combine(data, a, b)) == 3


def test_backend_switch_is_invisible():
    data, a, b = (secrets.token_bytes(64) for _ in range(3))
    set_backend('python')
    assert get_backend() == 'python'
    slow = combine(data, a, b)
    set_backend('numpy')
    assert combine(data, a, b) == slow

    with pytest.raises(ValueError):
        set_backend('gpu')


def test_accelerated_failure_falls_back(monkeypatch):
    def broken(data, a, b):
        raise ValueError("boom")

    monkeypatch.setitem(xor.BACKENDS, 'numpy', broken)
    set_backend('numpy')
    data, a, b = (secrets.token_bytes(32) for _ in range(3))
    assert combine(data, a, b) == xor_python(data, a, b)


def test_local_keystream_shape():
    keys = generate_local_keystream(4, 128)
    assert len(keys) == 4
    assert all(len(k) == 128 for k in keys)
    assert len(set(keys)) == 4


def test_key_slice_encoding():
    raw = secrets.token_bytes(100)
    assert decode_key_slice(encode_key_slice(raw)) == raw


def test_cipher_apply_is_involutive():
    cipher = SplitKeyCipher(chunk_size=32)
    cipher.generate_local(2)
    cipher.set_keys(key_b=generate_local_keystream(2, 32))
    assert cipher.keys_ready(2)

    plaintext = b'hello swarm'
    ciphertext = cipher.apply(1, plaintext)
    assert ciphertext != plaintext
    assert cipher.apply(1, ciphertext) == plaintext

    cipher.clear()
    assert not cipher.keys_ready(1)


@pytest.mark.asyncio
async def test_provider_fetches_expected_frames():
    fake = FakeKeyProvider(chunk_size=16)
    provider = KeystreamProvider('wss://keys.test/', chunk_size=16, connector=fake.connect)

    progress = []
    frames = await provider.fetch(40, lambda done, total: progress.append((done, total)))

    assert fake.urls == ['wss://keys.test/ws/key/40']
    assert len(frames) == 3
    assert all(len(f) == 16 for f in frames)
    assert progress[-1] == (3, 3)
    assert fake.channels[0].closed_by_client


@pytest.mark.asyncio
async def test_provider_abnormal_close_is_fatal():
    fake = FakeKeyProvider(chunk_size=16, close_code=1011, frames_before_close=1)
    provider = KeystreamProvider('wss://keys.test', chunk_size=16, connector=fake.connect)

    with pytest.raises(KeyAcquisitionError) as excinfo:
        await provider.fetch(64)
    assert excinfo.value.close_code == 1011


@pytest.mark.asyncio
async def test_provider_short_stream_is_fatal():
    fake = FakeKeyProvider(chunk_size=16, frames_before_close=2)
    provider = KeystreamProvider('wss://keys.test', chunk_size=16, connector=fake.connect)

    with pytest.raises(KeyAcquisitionError):
        await provider.fetch(64)


@pytest.mark.asyncio
async def test_provider_unreachable_is_fatal():
    fake = FakeKeyProvider(unreachable=True)
    provider = KeystreamProvider('wss://keys.test', connector=fake.connect)

    with pytest.raises(KeyAcquisitionError):
        await provider.fetch(100)


@pytest.mark.asyncio
async def test_zero_size_needs_no_connection():
    fake = FakeKeyProvider()
    provider = KeystreamProvider('wss://keys.test', connector=fake.connect)
    assert await provider.fetch(0) == []
    assert fake.urls == []
