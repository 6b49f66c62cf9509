"""
Crypto Module - Split-Key One-Time Pad

Keystream generation/acquisition and the XOR combine used for both
encryption and decryption.
"""

from .xor import combine, set_backend, get_backend, xor_numpy, xor_python
from .keystream import KeystreamProvider, generate_local_keystream
from .cipher import SplitKeyCipher, KeyRoute, encode_key_slice, decode_key_slice

__all__ = [
    'combine',
    'set_backend',
    'get_backend',
    'xor_numpy',
    'xor_python',
    'KeystreamProvider',
    'generate_local_keystream',
    'SplitKeyCipher',
    'KeyRoute',
    'encode_key_slice',
    'decode_key_slice',
]
