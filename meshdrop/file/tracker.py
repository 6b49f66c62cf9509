"""
Chunk Tracker

Design Decision: Scheduling Strategy
====================================

Options Considered:
1. Sequential (lowest missing index first)
   - Simple, good for streaming playback
   - The whole swarm converges on the same chunks

2. Random selection
   - Spreads load
   - Ignores what the swarm actually holds

3. Rarest-first (BitTorrent)
   - Prioritizes chunks held by the fewest peers
   - Maximizes diversity of what gets redistributed

Decision: Rarest-first over the chunks at least one peer holds
- Ties broken by index order, so results are deterministic
- Chunks nobody holds are never returned (requesting them would stall)

Bitfield states per chunk: absent -> requested -> held.
Held never reverts; a request older than the timeout reverts to absent.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set

from ..exceptions import MissingChunkError

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 5.0  # seconds


@dataclass
class ChunkRequest:
    """An outstanding request for one chunk."""
    chunk_index: int
    requested_from: Optional[str]
    requested_at: float


class ChunkTracker:
    """
    Per-session bitfield and chunk store.

    Calls made before init() (total_chunks == 0) are no-ops or return
    zero results, so pollers never crash before a session starts.
    """

    def __init__(self, request_timeout: float = REQUEST_TIMEOUT,
                 clock: Callable[[], float] = time.monotonic):
        self.request_timeout = request_timeout
        self._clock = clock

        self.total_chunks = 0
        self._chunks: Dict[int, bytes] = {}
        self._requests: Dict[int, ChunkRequest] = {}

    def init(self, total_chunks: int):
        """Reset all state for a session of `total_chunks` chunks."""
        self.total_chunks = max(0, int(total_chunks))
        self._chunks.clear()
        self._requests.clear()

    def clear(self):
        self._chunks.clear()
        self._requests.clear()
        self.total_chunks = 0

    # === Held chunks ===

    def mark_have(self, index: int, data: bytes) -> bool:
        """
        Record a chunk payload.

        First writer wins: a repeated or conflicting call for an index that
        is already held leaves the stored payload untouched.

        Returns:
            True if the chunk was newly recorded
        """
        if not self._in_range(index):
            logger.debug(f"Ignoring out-of-range chunk {index} (total {self.total_chunks})")
            return False

        if index in self._chunks:
            if self._chunks[index] != data:
                logger.warning(f"Conflicting payload for held chunk {index} ignored")
            return False

        self._chunks[index] = bytes(data)
        self._requests.pop(index, None)
        return True

    def has_chunk(self, index: int) -> bool:
        return index in self._chunks

    def get_chunk(self, index: int) -> Optional[bytes]:
        return self._chunks.get(index)

    def get_have_list(self) -> List[int]:
        """Held indices in ascending order."""
        return sorted(self._chunks)

    @property
    def held_count(self) -> int:
        return len(self._chunks)

    # === Requests ===

    def mark_requested(self, index: int, peer_id: Optional[str] = None):
        """Timestamp a request, replacing any prior request for the index."""
        if not self._in_range(index) or index in self._chunks:
            return
        self._requests[index] = ChunkRequest(
            chunk_index=index,
            requested_from=peer_id,
            requested_at=self._clock(),
        )

    def is_requested(self, index: int) -> bool:
        """True while a non-expired request exists for the index."""
        request = self._requests.get(index)
        if request is None:
            return False
        return self._clock() - request.requested_at <= self.request_timeout

    def requested_from(self, index: int) -> Optional[str]:
        request = self._requests.get(index)
        return request.requested_from if request else None

    def cancel_timed_out_requests(self, timeout: Optional[float] = None) -> List[int]:
        """
        Evict stale requests back to absent.

        Returns:
            Evicted indices, ascending, for rescheduling
        """
        timeout = self.request_timeout if timeout is None else timeout
        now = self._clock()

        expired = sorted(
            index for index, request in self._requests.items()
            if now - request.requested_at > timeout
        )
        for index in expired:
            del self._requests[index]

        if expired:
            logger.debug(f"Requeued {len(expired)} timed-out chunk requests")
        return expired

    # === Scheduling ===

    def get_needed_chunks(self) -> List[int]:
        """Ascending indices that are neither held nor requested."""
        return [
            index for index in range(self.total_chunks)
            if index not in self._chunks and not self.is_requested(index)
        ]

    def get_rarest_chunks(self, peer_availability: Mapping[str, Iterable[int]],
                          count: int = 5) -> List[int]:
        """
        Pick up to `count` needed chunks, rarest first.

        Args:
            peer_availability: peer id -> chunk indices that peer announced
            count: maximum number of chunks to return

        Returns:
            Needed chunks with at least one holder, ascending by holder
            count, ties broken by index
        """
        if count <= 0:
            return []

        holders: Dict[int, int] = {}
        for chunks in peer_availability.values():
            chunk_set: Set[int] = chunks if isinstance(chunks, set) else set(chunks)
            for index in chunk_set:
                holders[index] = holders.get(index, 0) + 1

        candidates = [
            index for index in self.get_needed_chunks()
            if holders.get(index, 0) > 0
        ]
        candidates.sort(key=lambda index: (holders[index], index))
        return candidates[:count]

    # === Progress ===

    def get_progress(self) -> float:
        """Held chunks as a percentage of the total (0 when uninitialized)."""
        if self.total_chunks == 0:
            return 0.0
        return len(self._chunks) / self.total_chunks * 100

    def is_complete(self) -> bool:
        return self.total_chunks > 0 and len(self._chunks) == self.total_chunks

    def first_missing(self) -> Optional[int]:
        for index in range(self.total_chunks):
            if index not in self._chunks:
                return index
        return None

    def assemble_data(self) -> bytes:
        """
        Concatenate all chunks in index order.

        Raises:
            MissingChunkError: if any chunk is still absent
        """
        missing = self.first_missing()
        if missing is not None:
            raise MissingChunkError(missing, self.total_chunks)
        return b''.join(self._chunks[index] for index in range(self.total_chunks))

    def _in_range(self, index: int) -> bool:
        return 0 <= index < self.total_chunks

    def get_stats(self) -> dict:
        return {
            'total_chunks': self.total_chunks,
            'held': len(self._chunks),
            'requested': len(self._requests),
            'progress_percent': self.get_progress(),
        }
