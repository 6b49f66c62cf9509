"""
Transfer Session

State shared by both roles of one session: the relay channel, the peer
mesh, the chunk tracker and the cipher. HostSession and ReceiverSession
add the role-specific protocol on top.

Relay room URL:
```
{relay_url}/room/{scheme}-{session_id}
```

The relay reader runs as one task; each frame is handled to completion
before the next is read, so relay chunk order is preserved. Anything
slow (streaming a file, delivering keys) runs in its own task.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Dict, List, Optional, Set

from ..config import Config
from ..crypto.cipher import SplitKeyCipher
from ..exceptions import MeshDropError, SessionError, TransportError
from ..file.manifest import FileMeta
from ..file.tracker import ChunkTracker
from ..mesh.manager import PeerLinkListener, PeerLinkManager
from ..mesh.rtc import ConnectionFactory
from .channel import Channel, ChannelClosed, ChannelConnector
from .events import (
    EventType, SourceAccounting, TransferEvent, TransferEvents,
    TransferProgress, TransferResult,
)
from .protocol import BinaryFrame, ControlFrame, Frame, PeerMessageType, RelayMessageType

logger = logging.getLogger(__name__)


class Role(Enum):
    HOST = "host"
    RECEIVER = "receiver"


class TransferSession(PeerLinkListener):
    """
    Base for one side of one session.

    Args:
        session_id: relay room / share link id
        config: node configuration
        connector: opens the relay channel for a URL
        factory: creates peer connections
        events: event stream (a fresh one if omitted)
    """

    role: Role = Role.HOST

    def __init__(self, session_id: str, config: Config, connector: ChannelConnector,
                 factory: ConnectionFactory, events: Optional[TransferEvents] = None):
        self.session_id = session_id
        self.config = config
        self.events = events or TransferEvents()

        self.meta: Optional[FileMeta] = None
        self.tracker = ChunkTracker(request_timeout=config.request_timeout)
        self.cipher = SplitKeyCipher(chunk_size=config.chunk_size)
        self.mesh = PeerLinkManager(factory, self.send_relay, listener=self)
        self.sources = SourceAccounting()

        self.relay: Optional[Channel] = None
        self.my_id = ''
        self.stage = 'connecting'
        self.error: Optional[MeshDropError] = None
        self.result: Optional[TransferResult] = None
        self.closed = False

        self._connector = connector
        self._finished = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()

    # === Lifecycle ===

    def room_url(self) -> str:
        return f"{self.config.relay_url.rstrip('/')}/room/{self.config.link_scheme}-{self.session_id}"

    async def start(self):
        """
        Open the relay channel and start reading it.

        Raises:
            TransportError: if the relay is unreachable
        """
        if self.relay is not None:
            raise SessionError(f"Session {self.session_id} already started")

        logger.info(f"Joining relay room for {self.session_id} as {self.role.value}")
        self.relay = await self._connector(self.room_url())
        self._spawn(self._read_relay())
        await self.on_started()

    async def on_started(self):
        pass

    async def close(self):
        """
        Disconnect everything and clear session state.

        Not graceful: outstanding requests are abandoned.
        """
        if self.closed:
            return
        self.closed = True
        logger.info(f"Closing {self.role.value} session {self.session_id}")

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        self._tasks.clear()

        await self.mesh.disconnect()
        if self.relay is not None:
            try:
                await self.relay.close()
            except Exception as e:
                logger.debug(f"Error closing relay channel: {e}")

        self.tracker.clear()
        self.cipher.clear()

        if not self._finished.is_set():
            if self.error is None and self.result is None:
                self.error = SessionError(f"Session {self.session_id} closed")
            self._finished.set()

    async def wait_finished(self) -> TransferResult:
        """
        Wait for completion.

        Raises:
            MeshDropError: the error that ended the session
        """
        await self._finished.wait()
        if self.result is not None:
            return self.result
        raise self.error

    def fail(self, error: MeshDropError):
        """Record a terminal error. Partial progress is kept until close()."""
        if self.error is not None or self.result is not None:
            return
        self.error = error
        self.stage = 'failed'
        logger.error(f"Session {self.session_id} failed: {error}")
        self.emit(EventType.ERROR, error=str(error), kind=type(error).__name__)
        self._finished.set()

    def finish(self, result: TransferResult):
        self.result = result
        self._finished.set()

    # === Relay ===

    async def send_relay(self, frame: Frame):
        """
        Send a frame into the relay room.

        Raises:
            TransportError: if the relay channel is gone
        """
        if self.relay is None or not self.relay.is_open:
            raise TransportError("Relay channel is not open")
        await self.relay.send(frame)

    async def wait_relay_drained(self):
        """Pause while the relay's outbound buffer is above the high-water mark."""
        while (
            self.relay is not None
            and self.relay.is_open
            and self.relay.buffered_amount > self.config.buffer_high_water
        ):
            await asyncio.sleep(self.config.backpressure_poll)

    async def _read_relay(self):
        try:
            async for frame in self.relay.frames():
                if isinstance(frame, BinaryFrame):
                    self.on_relay_binary(frame.data)
                else:
                    await self._dispatch(frame)
        except ChannelClosed as e:
            self.on_relay_lost(TransportError(f"Relay connection lost: {e}"))
            return
        except TransportError as e:
            self.on_relay_lost(e)
            return

        if not self.closed:
            self.on_relay_lost(TransportError("Relay closed the room"))

    def on_relay_lost(self, error: TransportError):
        if not self.closed:
            self.fail(error)

    async def _dispatch(self, frame: ControlFrame):
        try:
            msg_type = RelayMessageType(frame.type)
        except ValueError:
            logger.debug(f"Ignoring unknown relay message: {frame.type}")
            return

        try:
            if msg_type == RelayMessageType.WELCOME:
                await self.on_welcome(frame.message)
            elif msg_type == RelayMessageType.PEER_JOIN:
                await self.on_peer_join(frame.get('peerId'))
            elif msg_type == RelayMessageType.PEER_LEAVE:
                self.on_peer_leave(frame.get('peerId'))
            elif msg_type == RelayMessageType.SIGNAL:
                self.mesh.handle_signal(frame.message)
            else:
                await self.on_relay_control(msg_type, frame)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Malformed {frame.type} message ignored: {e}")

    async def on_welcome(self, message: Dict[str, Any]):
        self.my_id = str(message['your_id'])
        self.mesh.set_my_id(self.my_id)
        peers = [p for p in message.get('peers') or [] if p != self.my_id]
        logger.info(f"Joined room {self.session_id} as {self.my_id} ({len(peers)} peers present)")
        for peer_id in peers:
            self._spawn(self.mesh.connect_to_peer(peer_id))

    async def on_peer_join(self, peer_id: Optional[str]):
        if not peer_id:
            return
        logger.debug(f"Peer joined room {self.session_id}: {peer_id}")
        self._spawn(self.mesh.connect_to_peer(peer_id))

    def on_peer_leave(self, peer_id: Optional[str]):
        if peer_id:
            logger.debug(f"Peer left room {self.session_id}: {peer_id}")
            self.mesh.drop_peer(peer_id)

    async def on_relay_control(self, msg_type: RelayMessageType, frame: ControlFrame):
        logger.debug(f"Unhandled relay message {msg_type.value}")

    def on_relay_binary(self, data: bytes):
        logger.debug(f"Unexpected relay binary frame ({len(data)} bytes)")

    # === Mesh listener ===

    def on_peer_connected(self, peer_id: str):
        self.emit(EventType.PEER_CONNECTED, peer_id=peer_id)

    def on_peer_disconnected(self, peer_id: str):
        self.emit(EventType.PEER_DISCONNECTED, peer_id=peer_id)

    def announce_held(self, peer_id: Optional[str] = None):
        """Send our full have list in batches, to one peer or all."""
        for indices in batched(self.tracker.get_have_list(), self.config.announce_batch):
            if peer_id is None:
                self.mesh.announce_chunks(indices)
            else:
                self.mesh.send_control(peer_id, have_chunks(indices))

    # === Events ===

    def emit(self, event_type: EventType, **data: Any):
        self.events.emit(TransferEvent(event_type, self.session_id, data))

    def progress(self) -> TransferProgress:
        meta = self.meta
        return TransferProgress(
            session_id=self.session_id,
            role=self.role.value,
            stage=self.stage,
            file_name=meta.name if meta else '',
            file_size=meta.size if meta else 0,
            total_chunks=self.tracker.total_chunks,
            held_chunks=self.tracker.held_count,
            sources=SourceAccounting(self.sources.relay, self.sources.p2p),
            peers=len(self.mesh.get_connected_peers()),
        )

    def emit_progress(self):
        self.emit(EventType.PROGRESS, **self.progress().to_dict())

    def to_dict(self) -> dict:
        info = self.progress().to_dict()
        info['my_id'] = self.my_id
        info['error'] = str(self.error) if self.error else None
        info['complete'] = self.result is not None
        return info

    def get_stats(self) -> dict:
        return {
            'session': self.to_dict(),
            'tracker': self.tracker.get_stats(),
            'mesh': self.mesh.get_stats(),
        }

    # === Helpers ===

    def _spawn(self, coro: Awaitable) -> Optional[asyncio.Task]:
        if self.closed:
            coro.close()
            return None
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if isinstance(error, TransportError):
            self.on_relay_lost(error)
        elif error is not None:
            logger.error(f"Session task failed: {error!r}")


def batched(indices: List[int], size: int) -> List[List[int]]:
    return [indices[i:i + size] for i in range(0, len(indices), size)]


def have_chunks(indices: List[int]) -> Dict[str, Any]:
    return {'type': PeerMessageType.HAVE_CHUNKS.value, 'chunks': list(indices)}
