"""
Receiver Session

Design Decision: Receive State
==============================

Options Considered:
1. Flags captured per frame handler (expecting key A? how many left?)
   - Easy to reach impossible combinations

2. Explicit phase threaded through every relay frame
   - AWAITING_METADATA -> AWAITING_KEY_A -> AWAITING_KEY_B -> STREAMING -> COMPLETE
   - Each binary frame is interpreted by the current phase only

Decision: Explicit phase enum

Relay binary frames carry no index: key frames are counted against the
announced `count`, and chunk frames take the next relay index. Peer
chunk frames carry their own index and may arrive in any order, or
twice; the tracker keeps the first copy.

Chunks that arrive before both keystreams are installed are buffered
and decrypted once the keys are ready.

A repeated file_start (another receiver's request restarted the stream)
resets the relay index; keys are re-read only if still missing. When a
stream sends key B over a peer link to someone else, the ciphertext is
still buffered and a fresh file_request goes out at file_end.
Completed receivers ignore restreams and keep seeding.
"""

import asyncio
import logging
import random
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..config import Config
from ..crypto.cipher import decode_key_slice
from ..exceptions import MissingChunkError
from ..file.manifest import FileMeta
from ..mesh.rtc import ConnectionFactory
from .channel import ChannelConnector
from .events import EventType, TransferEvents, TransferResult
from .protocol import ControlFrame, PeerMessageType, RelayMessageType, control
from .session import Role, TransferSession

logger = logging.getLogger(__name__)

RELAY = 'relay'
P2P = 'p2p'


class ReceivePhase(Enum):
    AWAITING_METADATA = "awaiting_metadata"
    AWAITING_KEY_A = "awaiting_key_a"
    AWAITING_KEY_B = "awaiting_key_b"
    STREAMING = "streaming"
    COMPLETE = "complete"


class ReceiverSession(TransferSession):
    """
    Receiver side of a session.

    Args:
        file_name: name from the share link (file_start may refine it)
    """

    role = Role.RECEIVER

    def __init__(self, session_id: str, file_name: str, config: Config,
                 connector: ChannelConnector, factory: ConnectionFactory,
                 events: Optional[TransferEvents] = None):
        super().__init__(session_id, config, connector, factory, events)
        self.file_name = file_name
        self.phase = ReceivePhase.AWAITING_METADATA

        self.relay_index = 0
        self.duplicates = 0

        # Relay key windows
        self._key_expected = 0
        self._key_frames: List[bytes] = []
        self._key_window_open = False

        # Keystream B over a peer link
        self._peer_key_count: Optional[int] = None
        self._peer_key_slices: Dict[int, bytes] = {}
        self._key_b_via_peer = False
        self._key_b_peer: Optional[str] = None
        # Key B of the current stream went to another receiver
        self._key_b_missed = False

        # Ciphertext waiting for keys: index -> (data, source)
        self._pending: Dict[int, Tuple[bytes, str]] = {}

        self._maintenance: Optional[asyncio.Task] = None

    async def on_started(self):
        self.stage = 'connecting'
        self._maintenance = self._spawn(self._maintenance_loop())

    async def request_file(self):
        logger.info(f"Requesting {self.file_name or self.session_id} from host")
        request = control(RelayMessageType.FILE_REQUEST, session=self.session_id)
        request.message['from'] = self.my_id
        await self.send_relay(request)

    # === Relay control ===

    async def on_welcome(self, message: Dict[str, Any]):
        await super().on_welcome(message)
        if self.phase == ReceivePhase.AWAITING_METADATA:
            await self.request_file()

    async def on_peer_join(self, peer_id: Optional[str]):
        await super().on_peer_join(peer_id)
        # The host may have (re)joined after our first request
        if peer_id and self.my_id and self.phase == ReceivePhase.AWAITING_METADATA:
            await self.request_file()

    async def on_relay_control(self, msg_type: RelayMessageType, frame: ControlFrame):
        if msg_type == RelayMessageType.FILE_START:
            self._on_file_start(frame.message)
        elif msg_type == RelayMessageType.KEY_A_START:
            self._on_key_start(ReceivePhase.AWAITING_KEY_A, int(frame.get('count', 0)))
        elif msg_type == RelayMessageType.KEY_B_START:
            if frame.get('via') == 'peer':
                self._on_key_b_via_peer(frame.get('to'), frame.get('from'))
            else:
                self._key_b_via_peer = False
                self._key_b_peer = None
                self._on_key_start(ReceivePhase.AWAITING_KEY_B, int(frame.get('count', 0)))
        elif msg_type == RelayMessageType.FILE_END:
            logger.debug(f"Relay stream ended at index {self.relay_index}")
            await self._on_file_end()
        else:
            logger.debug(f"Receiver ignoring relay message {msg_type.value}")

    def _on_file_start(self, message: Dict[str, Any]):
        if self.phase == ReceivePhase.COMPLETE:
            logger.debug("Ignoring restream; already complete")
            return

        meta = FileMeta.from_message(message, self.config.chunk_size)
        if meta.session and meta.session != self.session_id:
            logger.warning(f"file_start for session {meta.session} ignored")
            return

        if self.meta is None:
            self.meta = meta
            self.file_name = meta.name or self.file_name
            self.cipher.chunk_size = meta.chunk_size
            self.tracker.init(meta.total_chunks)
            logger.info(f"Receiving {meta.name}: {meta.size:,} bytes, {meta.total_chunks} chunks")
        elif (meta.size, meta.total_chunks) != (self.meta.size, self.meta.total_chunks):
            logger.warning("file_start changed file metadata mid-session; ignored")
            return
        else:
            logger.debug(f"Restream started; relay index reset from {self.relay_index}")

        self.relay_index = 0
        self._key_window_open = False
        self.phase = ReceivePhase.AWAITING_KEY_A
        self.stage = 'keys'
        self.emit_progress()

    def _on_key_start(self, phase: ReceivePhase, count: int):
        if self.phase != phase:
            logger.warning(f"Out-of-sequence key window for {phase.value} in {self.phase.value}")
            return
        self._key_expected = max(0, count)
        self._key_frames = []
        self._key_window_open = True
        if self._key_expected == 0:
            self._close_key_window()

    def _on_key_b_via_peer(self, to_id: Optional[str], host_id: Optional[str]):
        if self.phase != ReceivePhase.AWAITING_KEY_B:
            logger.warning(f"Out-of-sequence keyB_start in {self.phase.value}")
            return

        if to_id == self.my_id:
            logger.info(f"Key B will arrive over the peer link from {host_id}")
            self._key_b_via_peer = True
            self._key_b_peer = host_id
        elif not self._has_key_b():
            # Keep the ciphertext; the keys come with a stream of our own
            logger.info(f"Key B of this stream goes to {to_id}; re-requesting after file_end")
            self._key_b_missed = True
        self._begin_streaming()

    async def _on_file_end(self):
        if not self._key_b_missed:
            return
        self._key_b_missed = False
        if self.phase != ReceivePhase.COMPLETE and not self._has_key_b():
            await self.request_file()

    def _close_key_window(self):
        frames = self._key_frames
        self._key_frames = []
        self._key_window_open = False
        total = self.meta.total_chunks

        if self.phase == ReceivePhase.AWAITING_KEY_A:
            if len(self.cipher.key_a) < total:
                self.cipher.set_keys(key_a=frames)
            self.phase = ReceivePhase.AWAITING_KEY_B
        else:
            if len(self.cipher.key_b) < total:
                self.cipher.set_keys(key_b=frames)
            self._begin_streaming()

    def _begin_streaming(self):
        self.phase = ReceivePhase.STREAMING
        self.stage = 'transferring'
        self._on_keys_changed()

    # === Relay binary ===

    def on_relay_binary(self, data: bytes):
        if self.phase in (ReceivePhase.AWAITING_KEY_A, ReceivePhase.AWAITING_KEY_B):
            if not self._key_window_open:
                logger.warning(f"Binary frame before key window in {self.phase.value}; dropped")
                return
            self._key_frames.append(data)
            if len(self._key_frames) >= self._key_expected:
                self._close_key_window()

        elif self.phase == ReceivePhase.STREAMING:
            index = self.relay_index
            self.relay_index += 1
            if index >= self.meta.total_chunks:
                logger.warning(f"Relay chunk past the end ({index}); dropped")
                return
            self.accept_chunk(index, data, RELAY)

        elif self.phase == ReceivePhase.AWAITING_METADATA:
            logger.debug("Binary frame before file_start; dropped")

    # === Chunk intake ===

    def accept_chunk(self, index: int, ciphertext: bytes, source: str,
                     peer_id: Optional[str] = None):
        """Decrypt and record one chunk; first copy wins."""
        if self.meta is None or self.phase == ReceivePhase.COMPLETE:
            return
        if not 0 <= index < self.meta.total_chunks:
            logger.debug(f"Chunk {index} out of range from {peer_id or source}")
            return
        if len(ciphertext) != self.meta.chunk_length(index):
            logger.warning(
                f"Chunk {index} from {peer_id or source} is {len(ciphertext)} bytes, "
                f"expected {self.meta.chunk_length(index)}; dropped"
            )
            return
        if self.tracker.has_chunk(index):
            self.duplicates += 1
            return

        if not self.cipher.keys_ready(self.meta.total_chunks):
            self._pending.setdefault(index, (ciphertext, source))
            return

        plaintext = self.cipher.apply(index, ciphertext)
        if not self.tracker.mark_have(index, plaintext):
            return

        if source == RELAY:
            self.sources.relay += 1
        else:
            self.sources.p2p += 1

        self.mesh.announce_chunks([index])
        self.emit(EventType.CHUNK_RECEIVED, index=index, source=source, peer_id=peer_id)
        self.emit_progress()

        if self.tracker.is_complete():
            self._complete()

    def _on_keys_changed(self):
        if self.meta is None or not self.cipher.keys_ready(self.meta.total_chunks):
            return

        if self.meta.total_chunks == 0:
            self._complete()
            return

        pending, self._pending = self._pending, {}
        if pending:
            logger.debug(f"Decrypting {len(pending)} chunks buffered before keys")
        for index in sorted(pending):
            data, source = pending[index]
            self.accept_chunk(index, data, source)

    def _complete(self):
        if self.phase == ReceivePhase.COMPLETE:
            return
        try:
            data = self.tracker.assemble_data()
        except MissingChunkError as e:
            self.fail(e)
            return

        self.phase = ReceivePhase.COMPLETE
        self.stage = 'seeding'
        result = TransferResult(self.session_id, self.file_name, data, self.sources)

        logger.info(
            f"Received {self.file_name}: {result.size:,} bytes "
            f"(relay {self.sources.relay}, p2p {self.sources.p2p}, dup {self.duplicates})"
        )
        self.announce_held()
        self.emit(EventType.COMPLETE, **result.to_dict())
        self.emit_progress()
        self.finish(result)

        if self._maintenance is not None:
            self._maintenance.cancel()
            self._maintenance = None

    # === Scheduling ===

    def request_from_peers(self):
        """Ask holders for the rarest needed chunks, one capped batch."""
        if self.meta is None or self.phase == ReceivePhase.COMPLETE:
            return

        wanted = self.tracker.get_rarest_chunks(
            self.mesh.peer_availability(), count=self.config.request_batch
        )
        for index in wanted:
            holders = self.mesh.peers_with_chunk(index)
            if not holders:
                continue
            peer_id = random.choice(holders)
            if self.mesh.request_chunk(peer_id, index):
                self.tracker.mark_requested(index, peer_id)

    async def _maintenance_loop(self):
        while not self.closed and self.phase != ReceivePhase.COMPLETE:
            await asyncio.sleep(self.config.maintenance_interval)
            expired = self.tracker.cancel_timed_out_requests()
            if expired:
                logger.debug(f"Rescheduling {len(expired)} timed-out requests")
            self.request_from_peers()

    # === Mesh ===

    def on_peer_connected(self, peer_id: str):
        super().on_peer_connected(peer_id)
        self.announce_held(peer_id)

    def on_peer_disconnected(self, peer_id: str):
        super().on_peer_disconnected(peer_id)
        if self._key_b_peer is not None and peer_id != self._key_b_peer:
            return
        if self._key_b_via_peer and not self._has_key_b():
            logger.warning(f"Link to {peer_id} dropped before key B arrived; requesting a restream")
            self._key_b_via_peer = False
            self._spawn(self.request_file())

    def on_peer_chunks(self, peer_id: str, chunks: List[int]):
        self.request_from_peers()

    def on_chunk_request(self, peer_id: str, index: int):
        plaintext = self.tracker.get_chunk(index)
        if plaintext is None or self.meta is None:
            return
        if not self.cipher.keys_ready(self.meta.total_chunks):
            return
        # XOR is involutive: re-encrypting restores the host's ciphertext
        self.mesh.send_chunk(peer_id, index, self.cipher.apply(index, plaintext))

    def on_chunk_data(self, peer_id: str, index: int, data: bytes):
        self.accept_chunk(index, data, P2P, peer_id)
        self.request_from_peers()

    def on_peer_message(self, peer_id: str, message: Dict[str, Any]):
        msg_type = message.get('type')
        if msg_type in (PeerMessageType.KEY_B_START.value, PeerMessageType.KEY_B_CHUNK.value):
            if self._key_b_peer is not None and peer_id != self._key_b_peer:
                logger.warning(f"Ignoring key B from {peer_id}; expecting it from {self._key_b_peer}")
                return
        try:
            if msg_type == PeerMessageType.KEY_B_START.value:
                self._peer_key_count = int(message['count'])
                self._peer_key_slices = {}
                self._check_peer_key()
            elif msg_type == PeerMessageType.KEY_B_CHUNK.value:
                index = int(message['index'])
                self._peer_key_slices[index] = decode_key_slice(message['data'])
                self._check_peer_key()
            else:
                logger.debug(f"Unhandled peer message from {peer_id}: {msg_type}")
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Malformed {msg_type} from {peer_id}: {e}")

    def _check_peer_key(self):
        count = self._peer_key_count
        if count is None or len(self._peer_key_slices) < count:
            return
        if any(i not in self._peer_key_slices for i in range(count)):
            return

        if not self._has_key_b():
            self.cipher.set_keys(key_b=[self._peer_key_slices[i] for i in range(count)])
            logger.info(f"Key B received over peer link ({count} slices)")
        self._peer_key_count = None
        self._peer_key_slices = {}
        self._on_keys_changed()

    def _has_key_b(self) -> bool:
        return self.meta is not None and len(self.cipher.key_b) >= self.meta.total_chunks

    def to_dict(self) -> dict:
        info = super().to_dict()
        info['phase'] = self.phase.value
        info['duplicates'] = self.duplicates
        return info
