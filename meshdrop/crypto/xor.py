"""
Split-Key XOR Combine

    out[i] = data[i] ^ key_a[i] ^ key_b[i]

Key bytes past the end of a key count as zero; output length always
equals len(data). XOR is its own inverse, so the same call encrypts and
decrypts.

Two interchangeable backends produce bit-identical output:
- "numpy": vectorized np.bitwise_xor over uint8 views
- "python": a plain byte loop

The active backend can be swapped at runtime (set_backend); callers of
combine() cannot tell which one ran. If the accelerated backend raises,
the byte loop is used for that call.
"""

import logging
from typing import Callable, Dict

import numpy as np

logger = logging.getLogger(__name__)

CombineFn = Callable[[bytes, bytes, bytes], bytes]


def xor_python(data: bytes, key_a: bytes, key_b: bytes) -> bytes:
    """Reference byte loop."""
    len_a = len(key_a)
    len_b = len(key_b)
    out = bytearray(len(data))
    for i, byte in enumerate(data):
        a = key_a[i] if i < len_a else 0
        b = key_b[i] if i < len_b else 0
        out[i] = byte ^ a ^ b
    return bytes(out)


def _fit_key(key: bytes, length: int) -> np.ndarray:
    arr = np.frombuffer(key, dtype=np.uint8)[:length]
    if arr.size < length:
        arr = np.concatenate([arr, np.zeros(length - arr.size, dtype=np.uint8)])
    return arr


def xor_numpy(data: bytes, key_a: bytes, key_b: bytes) -> bytes:
    """Vectorized combine."""
    length = len(data)
    if length == 0:
        return b''
    out = np.frombuffer(data, dtype=np.uint8).copy()
    np.bitwise_xor(out, _fit_key(key_a, length), out=out)
    np.bitwise_xor(out, _fit_key(key_b, length), out=out)
    return out.tobytes()


BACKENDS: Dict[str, CombineFn] = {
    'numpy': xor_numpy,
    'python': xor_python,
}

_active = 'numpy'


def set_backend(name: str):
    """Select the combine backend ("numpy" or "python")."""
    global _active
    if name not in BACKENDS:
        raise ValueError(f"Unknown combine backend: {name}")
    _active = name
    logger.debug(f"Combine backend set to {name}")


def get_backend() -> str:
    return _active


def combine(data: bytes, key_a: bytes, key_b: bytes) -> bytes:
    """XOR `data` with both keystream slices."""
    data = bytes(data)
    key_a = bytes(key_a)
    key_b = bytes(key_b)

    if _active != 'python':
        try:
            return BACKENDS[_active](data, key_a, key_b)
        except (ValueError, TypeError, MemoryError) as e:
            logger.warning(f"Accelerated combine failed, using byte loop: {e}")

    return xor_python(data, key_a, key_b)
