"""
Transfer Events

Sessions report what happens to them through a small typed event stream
instead of ad-hoc callbacks. Two ways to listen:

- on(EventType, callback): synchronous callbacks, run in emit order
- subscribe(): an asyncio.Queue per consumer (used by the SSE endpoint)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiofiles

logger = logging.getLogger(__name__)


class EventType(Enum):
    PEER_CONNECTED = "peer_connected"
    PEER_DISCONNECTED = "peer_disconnected"
    CHUNK_RECEIVED = "chunk_received"
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class TransferEvent:
    type: EventType
    session_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            'type': self.type.value,
            'session_id': self.session_id,
            'data': self.data,
            'timestamp': self.timestamp,
        }


EventCallback = Callable[[TransferEvent], None]


class TransferEvents:
    """Fan-out of one session's events."""

    def __init__(self, queue_size: int = 1000):
        self._callbacks: Dict[EventType, List[EventCallback]] = {}
        self._queues: List[asyncio.Queue] = []
        self._queue_size = queue_size

    def on(self, event_type: EventType, callback: EventCallback):
        self._callbacks.setdefault(event_type, []).append(callback)

    def off(self, event_type: EventType, callback: EventCallback):
        callbacks = self._callbacks.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def subscribe(self) -> asyncio.Queue:
        """Queue receiving every event emitted from now on."""
        queue = asyncio.Queue(maxsize=self._queue_size)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._queues:
            self._queues.remove(queue)

    def emit(self, event: TransferEvent):
        for callback in list(self._callbacks.get(event.type, [])):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event callback for {event.type.value} failed: {e}")

        for queue in self._queues:
            if queue.full():
                # Slow consumer: drop its oldest event
                queue.get_nowait()
            queue.put_nowait(event)


@dataclass
class SourceAccounting:
    """Where recorded chunks came from."""
    relay: int = 0
    p2p: int = 0

    @property
    def total(self) -> int:
        return self.relay + self.p2p

    def to_dict(self) -> dict:
        return {'relay': self.relay, 'p2p': self.p2p}


@dataclass
class TransferProgress:
    """Snapshot of one session for progress displays."""
    session_id: str
    role: str
    stage: str  # 'connecting', 'keys', 'transferring', 'seeding', 'complete', 'failed'
    file_name: str = ''
    file_size: int = 0
    total_chunks: int = 0
    held_chunks: int = 0
    sources: SourceAccounting = field(default_factory=SourceAccounting)
    peers: int = 0

    @property
    def percent(self) -> float:
        if self.total_chunks == 0:
            return 100.0 if self.stage in ('complete', 'seeding') else 0.0
        return self.held_chunks / self.total_chunks * 100

    def to_dict(self) -> dict:
        return {
            'session_id': self.session_id,
            'role': self.role,
            'stage': self.stage,
            'file_name': self.file_name,
            'file_size': self.file_size,
            'total_chunks': self.total_chunks,
            'held_chunks': self.held_chunks,
            'progress_percent': self.percent,
            'sources': self.sources.to_dict(),
            'peers': self.peers,
        }


@dataclass
class TransferResult:
    """A completed download."""
    session_id: str
    name: str
    data: bytes
    sources: SourceAccounting = field(default_factory=SourceAccounting)

    @property
    def size(self) -> int:
        return len(self.data)

    async def save(self, directory: Path, name: Optional[str] = None) -> Path:
        """Write the file into `directory` and return its path."""
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        target = directory / Path(name or self.name or self.session_id).name

        async with aiofiles.open(target, 'wb') as f:
            await f.write(self.data)

        logger.info(f"Saved {self.name} ({self.size:,} bytes) to {target}")
        return target

    def to_dict(self) -> dict:
        return {
            'session_id': self.session_id,
            'name': self.name,
            'size': self.size,
            'sources': self.sources.to_dict(),
        }
