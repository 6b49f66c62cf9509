"""
Host Session

Serves one file to everyone in the relay room.

Stream sequence (relay, per file_request):
```
file_start{name, size, totalChunks, chunkSize, session}
keyA_start{count}   + count binary frames
keyB_start{count, via}  + count binary frames when via == "relay"
                        (via == "peer" adds to=requester, from=host)
<binary ciphertext chunk 0 .. N-1>
file_end{session}
```

Only one stream runs at a time. Requests that arrive mid-stream are
coalesced into a single follow-up stream, since every receiver in the
room sees every relay frame anyway. Receivers not named in a peer-route
keyB_start ask again after file_end.

Every encrypted chunk is also recorded in the tracker, so the host can
answer want_chunk requests from peers with stored ciphertext.
"""

import asyncio
import logging
from typing import List, Optional

from ..config import Config
from ..crypto.cipher import KeyRoute, SplitKeyCipher, encode_key_slice
from ..file.manifest import FileMeta
from ..mesh.rtc import ConnectionFactory
from .channel import ChannelConnector
from .events import TransferEvents
from .protocol import BinaryFrame, ControlFrame, PeerMessageType, RelayMessageType, control
from .session import Role, TransferSession

logger = logging.getLogger(__name__)


class HostSession(TransferSession):
    """
    Host side of a session.

    Args:
        meta: file metadata (its session field is the room id)
        plaintext: the file's chunks in index order
        cipher: cipher holding both keystreams for the file
    """

    role = Role.HOST

    def __init__(self, meta: FileMeta, plaintext: List[bytes], cipher: SplitKeyCipher,
                 config: Config, connector: ChannelConnector, factory: ConnectionFactory,
                 events: Optional[TransferEvents] = None):
        super().__init__(meta.session, config, connector, factory, events)
        self.meta = meta
        self.plaintext = plaintext
        self.cipher = cipher
        self.tracker.init(meta.total_chunks)

        self.streams_completed = 0
        self.key_routes: List[KeyRoute] = []

        self._stream_task: Optional[asyncio.Task] = None
        self._restream_requesters: List[Optional[str]] = []
        self._restream_pending = False

    async def on_started(self):
        self.stage = 'seeding'
        self.emit_progress()

    # === Relay messages ===

    async def on_relay_control(self, msg_type: RelayMessageType, frame: ControlFrame):
        if msg_type == RelayMessageType.FILE_REQUEST:
            session = frame.get('session')
            if session and session != self.session_id:
                logger.warning(f"file_request for unknown session {session} ignored")
                return
            self.request_stream(frame.get('from'))
        else:
            logger.debug(f"Host ignoring relay message {msg_type.value}")

    def request_stream(self, requester: Optional[str] = None):
        """Start a stream, or queue one follow-up if a stream is running."""
        if self._stream_task is not None and not self._stream_task.done():
            logger.debug(f"Stream in progress; queued restream for {requester}")
            self._restream_pending = True
            self._restream_requesters.append(requester)
            return
        self._stream_task = self._spawn(self._stream_loop(requester))

    async def _stream_loop(self, requester: Optional[str]):
        while True:
            self._restream_pending = False
            self._restream_requesters = []
            await self._stream(requester)
            self.streams_completed += 1
            if not self._restream_pending or self.closed:
                return
            # Key B goes over a peer link only when a single receiver asked
            waiting = set(self._restream_requesters)
            requester = waiting.pop() if len(waiting) == 1 else None

    async def _stream(self, requester: Optional[str]):
        meta = self.meta
        total = meta.total_chunks
        route = self._choose_key_route(requester)
        self.key_routes.append(route)

        logger.info(
            f"Streaming {meta.name} ({meta.size:,} bytes, {total} chunks) "
            f"for {requester or 'room'}, key B via {route.value}"
        )
        self.stage = 'transferring'

        await self.send_relay(ControlFrame(meta.to_message()))

        await self.send_relay(control(RelayMessageType.KEY_A_START, count=total))
        for index in range(total):
            await self._send_relay_binary(self.cipher.key_a[index], index)

        key_b_start = control(RelayMessageType.KEY_B_START, count=total, via=route.value)
        if route == KeyRoute.PEER:
            # Only the addressee switches to the peer route
            key_b_start.message['to'] = requester
            key_b_start.message['from'] = self.my_id
        await self.send_relay(key_b_start)
        if route == KeyRoute.PEER:
            await self.send_key_b_to_peer(requester)
        else:
            for index in range(total):
                await self._send_relay_binary(self.cipher.key_b[index], index)

        announced = 0
        for index in range(total):
            ciphertext = self.cipher.apply(index, self.plaintext[index])
            self.tracker.mark_have(index, ciphertext)
            await self._send_relay_binary(ciphertext, index)

            if (index + 1) % self.config.announce_every == 0:
                self.mesh.announce_chunks(range(announced, index + 1))
                announced = index + 1

        if announced < total:
            self.mesh.announce_chunks(range(announced, total))

        await self.send_relay(control(RelayMessageType.FILE_END, session=self.session_id))
        self.stage = 'seeding'
        self.emit_progress()
        logger.info(f"Stream of {meta.name} complete")

    def _choose_key_route(self, requester: Optional[str]) -> KeyRoute:
        """Decided once per stream; never re-evaluated mid-stream."""
        if requester and self.mesh.is_connected(requester):
            return KeyRoute.PEER
        return KeyRoute.RELAY

    async def _send_relay_binary(self, data: bytes, index: int):
        await self.wait_relay_drained()
        await self.send_relay(BinaryFrame(data))
        if (index + 1) % self.config.yield_every == 0:
            await asyncio.sleep(0)

    async def send_key_b_to_peer(self, peer_id: str):
        """Deliver keystream B over the direct link as base64 envelopes."""
        total = len(self.cipher.key_b)
        self.mesh.send_control(peer_id, {
            'type': PeerMessageType.KEY_B_START.value,
            'count': total,
        })

        for index, key in enumerate(self.cipher.key_b):
            await self.mesh.wait_drained(peer_id, self.config.buffer_high_water,
                                         self.config.backpressure_poll)
            sent = self.mesh.send_control(peer_id, {
                'type': PeerMessageType.KEY_B_CHUNK.value,
                'index': index,
                'data': encode_key_slice(key),
            })
            if not sent:
                # Link dropped mid-delivery; the receiver re-requests over the relay
                logger.warning(f"Key B delivery to {peer_id} interrupted at {index}/{total}")
                return
            if (index + 1) % self.config.yield_every == 0:
                await asyncio.sleep(0)

        logger.debug(f"Delivered key B to {peer_id} over peer link ({total} slices)")

    # === Mesh ===

    def on_peer_connected(self, peer_id: str):
        super().on_peer_connected(peer_id)
        self.announce_held(peer_id)

    def on_chunk_request(self, peer_id: str, index: int):
        ciphertext = self.tracker.get_chunk(index)
        if ciphertext is None:
            logger.debug(f"{peer_id} wants chunk {index}, not streamed yet")
            return
        self.mesh.send_chunk(peer_id, index, ciphertext)

    def on_chunk_data(self, peer_id: str, index: int, data: bytes):
        logger.debug(f"Host ignoring chunk {index} from {peer_id}")
