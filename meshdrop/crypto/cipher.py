"""
Split-Key One-Time Pad

    ciphertext[i] = plaintext[i] ^ A[i] ^ B[i]

A is produced locally by the host; B is fetched from the remote
keystream provider. Neither stream alone reveals anything about the
plaintext.

Distribution policy
-------------------
When the host has a direct peer link to the requesting receiver, B is
sent over that link instead of the relay, so the relay never carries A,
B and the ciphertext together. This is best-effort hardening, not a
cryptographic guarantee: with no peer link, both streams travel through
the relay. The route is decided once per stream (KeyRoute) and announced
to the receiver.
"""

import base64
import logging
from enum import Enum
from typing import List, Optional

from ..file.chunker import CHUNK_SIZE
from .keystream import (
    Keystream, KeystreamProvider, KeyProgressCallback, generate_local_keystream,
)
from .xor import combine

logger = logging.getLogger(__name__)


class KeyRoute(Enum):
    """How keystream B reaches a receiver for one stream."""
    RELAY = "relay"
    PEER = "peer"


class SplitKeyCipher:
    """
    Holds one session's keystream pair and applies it per chunk.

    Args:
        chunk_size: bytes per keystream slice
        provider: remote keystream provider (host side only)
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE,
                 provider: Optional[KeystreamProvider] = None):
        self.chunk_size = chunk_size
        self.provider = provider
        self.key_a: Keystream = []
        self.key_b: Keystream = []

    # === Key acquisition ===

    def generate_local(self, total_chunks: int) -> Keystream:
        self.key_a = generate_local_keystream(total_chunks, self.chunk_size)
        return self.key_a

    async def fetch_remote(self, total_size: int,
                           progress_callback: KeyProgressCallback = None) -> Keystream:
        """
        Fetch keystream B from the provider.

        Raises:
            KeyAcquisitionError: propagated from the provider; fatal
        """
        if self.provider is None:
            raise ValueError("No keystream provider configured")
        self.key_b = await self.provider.fetch(total_size, progress_callback)
        return self.key_b

    def set_keys(self, key_a: Optional[List[bytes]] = None,
                 key_b: Optional[List[bytes]] = None):
        """Install keystreams received from a host."""
        if key_a is not None:
            self.key_a = list(key_a)
        if key_b is not None:
            self.key_b = list(key_b)

    def keys_ready(self, total_chunks: int) -> bool:
        return len(self.key_a) >= total_chunks and len(self.key_b) >= total_chunks

    # === Combine ===

    def apply(self, index: int, data: bytes) -> bytes:
        """
        Encrypt or decrypt chunk `index`.

        A missing keystream slice combines as zeros, like bytes past the
        end of a short slice.
        """
        key_a = self.key_a[index] if index < len(self.key_a) else b''
        key_b = self.key_b[index] if index < len(self.key_b) else b''
        return combine(data, key_a, key_b)

    def clear(self):
        self.key_a = []
        self.key_b = []


def encode_key_slice(data: bytes) -> str:
    """Text-safe encoding for keystream slices sent in JSON envelopes."""
    return base64.b64encode(data).decode('ascii')


def decode_key_slice(text: str) -> bytes:
    return base64.b64decode(text)
