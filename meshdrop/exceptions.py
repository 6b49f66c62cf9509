"""
Error Types

Every failure the swarm engine reports on purpose derives from
MeshDropError, so callers can catch the whole family in one place.
"""

from typing import Optional


class MeshDropError(Exception):
    pass


class TransportError(MeshDropError):
    """A relay or peer channel failed. Terminal for the session."""


class ProtocolError(MeshDropError):
    """A frame could not be decoded or arrived out of sequence."""


class KeyAcquisitionError(MeshDropError):
    """The keystream provider closed abnormally or delivered too little."""

    def __init__(self, message: str, close_code: Optional[int] = None):
        super().__init__(message)
        self.close_code = close_code


class MissingChunkError(MeshDropError):
    """Assembly was attempted while a chunk is still absent."""

    def __init__(self, index: int, total_chunks: int):
        super().__init__(f"Chunk {index} of {total_chunks} is missing")
        self.index = index
        self.total_chunks = total_chunks


class InvalidLinkError(MeshDropError):
    pass


class SessionError(MeshDropError):
    pass
