"""
Fixed-size file chunking.

Chunk i covers bytes [i * size, min((i + 1) * size, file_size)), so only
the last chunk can be short. The default size is 16 KiB: a single chunk
fits in one data-channel message, and the key provider emits keystream
frames of that same size, so keystream frame i always pairs with chunk i.
"""

import hashlib
from pathlib import Path
from typing import AsyncIterator, Tuple

import aiofiles

from ..config import DEFAULT_CHUNK_SIZE

CHUNK_SIZE = DEFAULT_CHUNK_SIZE


def chunk_count(file_size: int, chunk_size: int = CHUNK_SIZE) -> int:
    """ceil(file_size / chunk_size)."""
    return (file_size + chunk_size - 1) // chunk_size


class FileChunker:
    """
    Splits files into fixed-size chunks for swarm transfer.

    Reads are async (aiofiles) so a large share never blocks the event loop.
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE):
        self.chunk_size = chunk_size

    def get_chunk_count(self, file_size: int) -> int:
        """Chunks needed to cover ``file_size`` bytes."""
        return chunk_count(file_size, self.chunk_size)

    async def chunk_file(self, file_path: Path) -> AsyncIterator[Tuple[int, bytes]]:
        """Yield ``(index, data)`` for every chunk in order."""
        file_size = Path(file_path).stat().st_size
        count = self.get_chunk_count(file_size)

        async with aiofiles.open(file_path, 'rb') as f:
            for chunk_index in range(count):
                yield chunk_index, await f.read(self.chunk_size)

    async def compute_file_hash(self, file_path: Path) -> str:
        """
        SHA-256 of the entire file as hex.

        A prefix of this hash is the session id in share links.
        """
        digest = hashlib.sha256()
        async for _, data in self.chunk_file(file_path):
            digest.update(data)
        return digest.hexdigest()
