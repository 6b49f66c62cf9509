"""
Peer Link Manager

Owns the direct peer links of one session. Signaling (offer, answer,
candidates) travels through the relay room as envelopes:

    signal{from, to, payload}

The relay broadcasts, so envelopes addressed to someone else are dropped.

Design Decision: Offer Races
============================
Two peers may offer to each other at the same moment. An offer that
arrives while our own offer to that peer is pending is resolved by id:
- the greater id ignores the incoming offer and keeps its own
- the smaller id discards its pending connection and answers
Both sides compare the same two ids, so exactly one connection survives.

Offers arriving at a link that is connected or mid-negotiation are
ignored (no renegotiation). Nothing here raises on a bad signal; errors
are logged and the link is left as it was.

Per-peer channel messages:
- text:   have_chunks{chunks}, want_chunk{chunk}, or opaque envelopes
- binary: 4-byte big-endian chunk index + ciphertext
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from ..exceptions import ProtocolError, TransportError
from ..transfer.protocol import (
    BinaryFrame, ControlFrame, Frame, PeerMessageType, RelayMessageType,
    control, decode_frame, encode_frame, pack_chunk, unpack_chunk,
)
from .peer import PeerLink, PeerPhase
from .rtc import ConnectionFactory, DataChannel, Message

logger = logging.getLogger(__name__)

CHANNEL_LABEL = 'mesh'

RelaySender = Callable[[Frame], Awaitable[None]]


class PeerLinkListener:
    """Receives mesh events. Override what you need."""

    def on_peer_connected(self, peer_id: str):
        pass

    def on_peer_disconnected(self, peer_id: str):
        pass

    def on_peer_chunks(self, peer_id: str, chunks: List[int]):
        pass

    def on_chunk_request(self, peer_id: str, index: int):
        pass

    def on_chunk_data(self, peer_id: str, index: int, data: bytes):
        pass

    def on_peer_message(self, peer_id: str, message: Dict[str, Any]):
        pass


class PeerLinkManager:
    """
    Direct peer connections for one session.

    Args:
        factory: creates PeerConnection objects
        relay_send: sends a frame through the relay room
        listener: receives peer events
    """

    def __init__(self, factory: ConnectionFactory, relay_send: RelaySender,
                 listener: Optional[PeerLinkListener] = None):
        self.factory = factory
        self.my_id = ''
        self.peers: Dict[str, PeerLink] = {}

        self._relay_send = relay_send
        self._listener = listener or PeerLinkListener()
        self._signal_locks: Dict[str, asyncio.Lock] = {}
        # Candidates from peers whose offer has not arrived yet
        self._early_candidates: Dict[str, List[Dict[str, Any]]] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

        # Statistics
        self.chunks_sent = 0
        self.bytes_sent = 0

    def set_my_id(self, peer_id: str):
        self.my_id = peer_id

    # === Link lifecycle ===

    async def connect_to_peer(self, peer_id: str):
        """
        Offer a connection to `peer_id`.

        No-op for ourselves or for a peer we already know.
        """
        if self._closed or not peer_id or peer_id == self.my_id or peer_id in self.peers:
            return

        logger.info(f"Connecting to peer {peer_id}")
        link = self._create_link(peer_id, PeerPhase.OFFERING)
        self._attach_channel(link, link.connection.create_channel(CHANNEL_LABEL))

        async with self._lock_for(peer_id):
            if self.peers.get(peer_id) is not link:
                return  # replaced by a crossing offer while we waited
            try:
                offer = await link.connection.create_offer()
            except Exception as e:
                logger.warning(f"Failed to create offer for {peer_id}: {e}")
                self._drop(link)
                return
            if self.peers.get(peer_id) is link:
                await self._send_signal(peer_id, offer)

    def _create_link(self, peer_id: str, phase: PeerPhase) -> PeerLink:
        connection = self.factory.create(peer_id)
        link = PeerLink(peer_id=peer_id, connection=connection, phase=phase)
        self.peers[peer_id] = link

        connection.on_channel(lambda channel: self._attach_channel(link, channel))
        connection.on_state_change(lambda state: self._on_state_change(link, state))
        connection.on_candidate(
            lambda candidate: self._spawn(
                self._send_signal(peer_id, {'type': 'ice', 'candidate': candidate})
            )
        )
        return link

    def _attach_channel(self, link: PeerLink, channel: DataChannel):
        link.channel = channel
        channel.on_open(lambda: self._on_channel_open(link))
        channel.on_message(lambda message: self._on_channel_message(link, message))
        channel.on_close(lambda: self._drop(link))

        # Remote channels may already be open when they are handed to us
        if channel.ready_state == 'open':
            self._on_channel_open(link)

    def _on_channel_open(self, link: PeerLink):
        if self.peers.get(link.peer_id) is not link or link.phase == PeerPhase.CONNECTED:
            return
        link.phase = PeerPhase.CONNECTED
        logger.info(f"Peer link ready: {link.peer_id}")
        self._listener.on_peer_connected(link.peer_id)

    def _on_state_change(self, link: PeerLink, state: str):
        logger.debug(f"Peer {link.peer_id} connection state: {state}")
        if state in ('failed', 'disconnected', 'closed'):
            self._drop(link)

    def _drop(self, link: PeerLink):
        """Forget a link after failure or close. No automatic retry."""
        if self.peers.get(link.peer_id) is not link:
            return
        was_connected = link.phase == PeerPhase.CONNECTED
        link.phase = PeerPhase.CLOSED
        del self.peers[link.peer_id]
        self._spawn(link.connection.close())

        logger.info(f"Peer link closed: {link.peer_id}")
        if was_connected:
            self._listener.on_peer_disconnected(link.peer_id)

    def drop_peer(self, peer_id: str):
        self._early_candidates.pop(peer_id, None)
        link = self.peers.get(peer_id)
        if link:
            self._drop(link)

    async def disconnect(self):
        """Tear down every link. In-flight requests are abandoned."""
        self._closed = True
        links = list(self.peers.values())
        self.peers.clear()

        for link in links:
            link.phase = PeerPhase.CLOSED
            if link.channel is not None and link.channel.ready_state != 'closed':
                link.channel.close()
            try:
                await link.connection.close()
            except Exception as e:
                logger.debug(f"Error closing link to {link.peer_id}: {e}")

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._signal_locks.clear()
        self._early_candidates.clear()

    # === Signaling ===

    def handle_signal(self, message: Dict[str, Any]):
        """
        Accept a relay `signal` envelope. Processing happens in order per
        sending peer, off the caller's turn.
        """
        from_id = message.get('from')
        to_id = message.get('to')
        payload = message.get('payload')

        if to_id != self.my_id or not from_id or from_id == self.my_id:
            return
        if not isinstance(payload, dict):
            logger.warning(f"Signal from {from_id} without payload")
            return

        self._spawn(self.process_signal(from_id, payload))

    async def process_signal(self, from_id: str, payload: Dict[str, Any]):
        if self._closed:
            return
        kind = payload.get('type')

        async with self._lock_for(from_id):
            try:
                if kind == 'offer':
                    await self._handle_offer(from_id, payload)
                elif kind == 'answer':
                    await self._handle_answer(from_id, payload)
                elif kind in ('ice', 'candidate'):
                    await self._handle_candidate(from_id, payload.get('candidate'))
                else:
                    logger.warning(f"Unknown signal type from {from_id}: {kind}")
            except Exception as e:
                logger.warning(f"Signal handling error for {from_id}: {e}")

    async def _handle_offer(self, from_id: str, offer: Dict[str, Any]):
        link = self.peers.get(from_id)

        if link is not None:
            state = link.connection.signaling_state
            if link.phase == PeerPhase.OFFERING and state == 'have-local-offer':
                if self.my_id > from_id:
                    logger.debug(f"Crossing offer from {from_id} ignored")
                    return
                logger.debug(f"Crossing offer from {from_id}: yielding")
                # Its candidates belong to the offer we are about to answer
                self._early_candidates.setdefault(from_id, [])[:0] = link.pending_candidates
                self._discard(link)
            else:
                logger.debug(f"Ignoring offer from {from_id} in {link.phase.value}/{state}")
                return

        link = self._create_link(from_id, PeerPhase.ANSWERING)
        link.pending_candidates = self._early_candidates.pop(from_id, [])

        await link.connection.set_remote_description(offer)
        await self._flush_candidates(link)

        answer = await link.connection.create_answer()
        await self._send_signal(from_id, answer)

    async def _handle_answer(self, from_id: str, answer: Dict[str, Any]):
        link = self.peers.get(from_id)
        if link is None or link.connection.signaling_state != 'have-local-offer':
            state = link.connection.signaling_state if link else None
            logger.debug(f"Ignoring answer from {from_id}, state: {state}")
            return

        await link.connection.set_remote_description(answer)
        await self._flush_candidates(link)

    async def _handle_candidate(self, from_id: str, candidate: Optional[Dict[str, Any]]):
        if not candidate:
            return

        link = self.peers.get(from_id)
        if link is None:
            # No link yet: hold it for the offer. A late candidate for a
            # dropped link lands here too and never revives the link.
            early = self._early_candidates.setdefault(from_id, [])
            early.append(candidate)
            logger.debug(f"Buffered candidate for {from_id} ({len(early)})")
        elif link.connection.has_remote_description:
            await link.connection.add_candidate(candidate)
        else:
            link.pending_candidates.append(candidate)
            logger.debug(f"Buffered candidate for {from_id} ({len(link.pending_candidates)})")

    async def _flush_candidates(self, link: PeerLink):
        """Apply buffered candidates in arrival order."""
        pending, link.pending_candidates = link.pending_candidates, []
        if pending:
            logger.debug(f"Applying {len(pending)} buffered candidates for {link.peer_id}")
        for candidate in pending:
            try:
                await link.connection.add_candidate(candidate)
            except Exception as e:
                logger.warning(f"Failed to add buffered candidate for {link.peer_id}: {e}")

    def _discard(self, link: PeerLink):
        """Drop a half-open link silently (it never connected)."""
        if self.peers.get(link.peer_id) is link:
            del self.peers[link.peer_id]
        link.phase = PeerPhase.CLOSED
        if link.channel is not None:
            link.channel.close()
        self._spawn(link.connection.close())

    async def _send_signal(self, to_id: str, payload: Dict[str, Any]):
        envelope = control(RelayMessageType.SIGNAL, to=to_id, payload=payload)
        envelope.message['from'] = self.my_id
        try:
            await self._relay_send(envelope)
        except TransportError as e:
            logger.warning(f"Could not send signal to {to_id}: {e}")

    # === Channel messages ===

    def _on_channel_message(self, link: PeerLink, message: Message):
        try:
            frame = decode_frame(message)
        except ProtocolError as e:
            logger.warning(f"Bad message from {link.peer_id}: {e}")
            return

        if isinstance(frame, BinaryFrame):
            try:
                index, data = unpack_chunk(frame.data)
            except ProtocolError as e:
                logger.warning(f"Bad chunk frame from {link.peer_id}: {e}")
                return
            link.bytes_received += len(data)
            link.chunks_received += 1
            self._listener.on_chunk_data(link.peer_id, index, data)
            return

        self._handle_control(link, frame)

    def _handle_control(self, link: PeerLink, frame: ControlFrame):
        if frame.type == PeerMessageType.HAVE_CHUNKS.value:
            chunks = frame.get('chunks')
            if not isinstance(chunks, list):
                logger.warning(f"have_chunks from {link.peer_id} without a list")
                return
            indices = [c for c in chunks if isinstance(c, int) and c >= 0]
            link.chunks.update(indices)
            logger.debug(f"{link.peer_id} has {len(indices)} more chunks ({len(link.chunks)} total)")
            self._listener.on_peer_chunks(link.peer_id, indices)

        elif frame.type == PeerMessageType.WANT_CHUNK.value:
            index = frame.get('chunk')
            if not isinstance(index, int) or index < 0:
                logger.warning(f"want_chunk from {link.peer_id} without an index")
                return
            self._listener.on_chunk_request(link.peer_id, index)

        else:
            self._listener.on_peer_message(link.peer_id, frame.message)

    # === Sending ===

    def _ready_channel(self, peer_id: str) -> Optional[DataChannel]:
        link = self.peers.get(peer_id)
        if link is None or not link.is_ready:
            return None
        return link.channel

    def _send(self, peer_id: str, frame: Frame) -> bool:
        channel = self._ready_channel(peer_id)
        if channel is None:
            return False
        try:
            channel.send(encode_frame(frame))
        except Exception as e:
            logger.warning(f"Send to {peer_id} failed: {e}")
            return False
        return True

    def announce_chunks(self, indices: Iterable[int]) -> int:
        """Broadcast have_chunks to every ready peer. Returns peers reached."""
        frame = control(PeerMessageType.HAVE_CHUNKS, chunks=list(indices))
        return sum(1 for peer_id in self.get_connected_peers() if self._send(peer_id, frame))

    def request_chunk(self, peer_id: str, index: int) -> bool:
        return self._send(peer_id, control(PeerMessageType.WANT_CHUNK, chunk=index))

    def send_chunk(self, peer_id: str, index: int, data: bytes) -> bool:
        sent = self._send(peer_id, BinaryFrame(pack_chunk(index, data)))
        if sent:
            self.chunks_sent += 1
            self.bytes_sent += len(data)
        return sent

    def send_control(self, peer_id: str, message: Dict[str, Any]) -> bool:
        return self._send(peer_id, ControlFrame(dict(message)))

    async def wait_drained(self, peer_id: str, high_water: int, poll: float = 0.01):
        """Wait while the peer's channel holds more than `high_water` bytes."""
        channel = self._ready_channel(peer_id)
        while channel is not None and channel.buffered_amount > high_water:
            await asyncio.sleep(poll)
            channel = self._ready_channel(peer_id)

    # === Queries ===

    def get_connected_peers(self) -> List[str]:
        return [peer_id for peer_id, link in self.peers.items() if link.is_ready]

    def is_connected(self, peer_id: str) -> bool:
        link = self.peers.get(peer_id)
        return link is not None and link.is_ready

    def peers_with_chunk(self, index: int) -> List[str]:
        return [
            peer_id for peer_id, link in self.peers.items()
            if link.is_ready and index in link.chunks
        ]

    def get_peer_chunks(self, peer_id: str) -> Set[int]:
        link = self.peers.get(peer_id)
        return set(link.chunks) if link else set()

    def peer_availability(self) -> Dict[str, Set[int]]:
        """Announced chunk sets of ready peers."""
        return {
            peer_id: link.chunks for peer_id, link in self.peers.items()
            if link.is_ready
        }

    def get_stats(self) -> dict:
        return {
            'my_id': self.my_id,
            'connected': len(self.get_connected_peers()),
            'known': len(self.peers),
            'chunks_sent': self.chunks_sent,
            'bytes_sent': self.bytes_sent,
            'peers': [link.to_dict() for link in self.peers.values()],
        }

    # === Helpers ===

    def _lock_for(self, peer_id: str) -> asyncio.Lock:
        lock = self._signal_locks.get(peer_id)
        if lock is None:
            lock = self._signal_locks[peer_id] = asyncio.Lock()
        return lock

    def _spawn(self, coro: Awaitable) -> Optional[asyncio.Task]:
        if self._closed:
            coro.close()
            return None
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Mesh task failed: {task.exception()}")
