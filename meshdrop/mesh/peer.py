"""
Peer Link State

One PeerLink per remote participant, created on first observation of its
id (an offer, a candidate, or our own connect) and dropped on failure.

Signaling phases:
```
NEW --connect--> OFFERING --answer--> CONNECTED --fail/close--> CLOSED
NEW --offer----> ANSWERING --open---> CONNECTED
```
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from .rtc import DataChannel, PeerConnection


class PeerPhase(Enum):
    NEW = "new"
    OFFERING = "offering"
    ANSWERING = "answering"
    CONNECTED = "connected"
    CLOSED = "closed"


@dataclass
class PeerLink:
    """Remote participant state."""
    peer_id: str
    connection: PeerConnection
    phase: PeerPhase = PeerPhase.NEW
    channel: Optional[DataChannel] = None
    chunks: Set[int] = field(default_factory=set)
    pending_candidates: List[Dict[str, Any]] = field(default_factory=list)
    bytes_received: int = 0
    chunks_received: int = 0

    @property
    def is_ready(self) -> bool:
        """Connected with an open data channel."""
        return (
            self.phase == PeerPhase.CONNECTED
            and self.channel is not None
            and self.channel.ready_state == 'open'
        )

    def to_dict(self) -> dict:
        return {
            'peer_id': self.peer_id,
            'phase': self.phase.value,
            'ready': self.is_ready,
            'chunks': len(self.chunks),
            'bytes_received': self.bytes_received,
            'chunks_received': self.chunks_received,
        }
