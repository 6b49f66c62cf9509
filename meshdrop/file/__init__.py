"""
File Module - Chunking, Bitfield Tracking, and Share Links

This module handles file operations for the swarm transfer engine.
"""

from .chunker import FileChunker, CHUNK_SIZE, chunk_count
from .manifest import FileMeta, make_share_link, parse_share_link, session_id_from_hash
from .tracker import ChunkTracker, ChunkRequest

__all__ = [
    'FileChunker',
    'CHUNK_SIZE',
    'chunk_count',
    'FileMeta',
    'make_share_link',
    'parse_share_link',
    'session_id_from_hash',
    'ChunkTracker',
    'ChunkRequest',
]
