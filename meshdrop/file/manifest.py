"""
File Metadata and Share Links

The metadata a host announces in `file_start` is everything a receiver
needs to size its bitfield: name, byte size, chunk size and chunk count.

Share link format:
```
<scheme>://<sessionId>/<urlEncodedFileName>
```
The session id is the first 16 hex characters of the file's SHA-256.
"""

import re
from dataclasses import dataclass, asdict
from typing import Dict, Tuple
from urllib.parse import quote, unquote

from ..exceptions import InvalidLinkError
from .chunker import CHUNK_SIZE, chunk_count

SESSION_ID_LENGTH = 16


def session_id_from_hash(content_hash: str) -> str:
    """Derive the session id from a content hash (hex)."""
    return content_hash[:SESSION_ID_LENGTH].lower()


def make_share_link(session_id: str, file_name: str, scheme: str = 'zkv') -> str:
    return f"{scheme}://{session_id}/{quote(file_name, safe='')}"


def parse_share_link(link: str, scheme: str = 'zkv') -> Tuple[str, str]:
    """
    Split a share link into (session_id, file_name).

    Raises:
        InvalidLinkError: if the link does not match the expected format
    """
    pattern = rf'^{re.escape(scheme)}://([a-fA-F0-9]+)/(.+)$'
    match = re.match(pattern, link.strip())
    if not match:
        raise InvalidLinkError(f"Invalid link format: {link!r}")
    return match.group(1).lower(), unquote(match.group(2))


@dataclass
class FileMeta:
    """Metadata carried by the `file_start` control message."""
    name: str
    size: int
    total_chunks: int
    session: str
    chunk_size: int = CHUNK_SIZE

    @classmethod
    def for_file(cls, name: str, size: int, session: str,
                 chunk_size: int = CHUNK_SIZE) -> 'FileMeta':
        return cls(
            name=name,
            size=size,
            total_chunks=chunk_count(size, chunk_size),
            session=session,
            chunk_size=chunk_size,
        )

    def chunk_length(self, index: int) -> int:
        """Expected plaintext length of chunk `index`."""
        start = index * self.chunk_size
        return max(0, min(self.chunk_size, self.size - start))

    def to_message(self) -> Dict:
        """Serialize as a `file_start` control message."""
        return {
            'type': 'file_start',
            'name': self.name,
            'size': self.size,
            'totalChunks': self.total_chunks,
            'chunkSize': self.chunk_size,
            'session': self.session,
        }

    @classmethod
    def from_message(cls, msg: Dict, default_chunk_size: int = CHUNK_SIZE) -> 'FileMeta':
        """
        Parse a `file_start` control message.

        Raises:
            KeyError, TypeError, ValueError: on a malformed message
        """
        size = int(msg['size'])
        total = int(msg['totalChunks'])
        if size < 0 or total < 0:
            raise ValueError(f"Negative size in file_start: {size}/{total}")
        return cls(
            name=str(msg.get('name', '')),
            size=size,
            total_chunks=total,
            session=str(msg.get('session', '')),
            chunk_size=int(msg.get('chunkSize', default_chunk_size)),
        )

    def to_dict(self) -> Dict:
        return asdict(self)
