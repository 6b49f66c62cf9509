"""
In-memory stand-ins for the relay room, the keystream provider and the
WebRTC transport, so a whole swarm runs inside one event loop.
"""

import asyncio
import itertools
import secrets
from typing import Callable, Dict, List, Optional, Set, Tuple

from meshdrop.exceptions import TransportError
from meshdrop.mesh.rtc import ConnectionFactory, DataChannel, PeerConnection
from meshdrop.transfer.channel import ABNORMAL_CLOSURE, NORMAL_CLOSURE, Channel, ChannelClosed
from meshdrop.transfer.protocol import (
    BinaryFrame, ControlFrame, Frame, control, decode_frame, encode_frame,
)


# === Relay ===

class MemoryChannel(Channel):
    """
    One member's end of a relay room.

    With `latency`, inbound binary frames are released one per `latency`
    seconds, in order.
    """

    def __init__(self, on_send: Callable[['MemoryChannel', Frame], None],
                 on_close: Optional[Callable[['MemoryChannel'], None]] = None,
                 latency: float = 0.0):
        self.sent: List[Frame] = []
        self.buffered = 0
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._on_send = on_send
        self._on_close = on_close
        self._open = True
        self._latency = latency
        self._pipe: Optional[asyncio.Queue] = None
        self._pump: Optional[asyncio.Task] = None
        if latency:
            self._pipe = asyncio.Queue()
            self._pump = asyncio.ensure_future(self._run_pump())

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def buffered_amount(self) -> int:
        return self.buffered

    async def send(self, frame: Frame):
        if not self._open:
            raise TransportError("Channel closed")
        self.sent.append(frame)
        self._on_send(self, frame)

    async def recv(self) -> Frame:
        item = await self._inbox.get()
        if isinstance(item, ChannelClosed):
            self._open = False
            raise item
        return item

    def deliver(self, frame: Frame):
        if self._pipe is not None:
            self._pipe.put_nowait(frame)
        else:
            self._inbox.put_nowait(frame)

    def drop(self, code: int = ABNORMAL_CLOSURE):
        """Simulate the remote end going away."""
        self._inbox.put_nowait(ChannelClosed(code, 'dropped'))

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = ''):
        if not self._open:
            return
        self._open = False
        if self._pump is not None:
            self._pump.cancel()
        self._inbox.put_nowait(ChannelClosed(code, reason))
        if self._on_close:
            self._on_close(self)

    async def _run_pump(self):
        while True:
            frame = await self._pipe.get()
            if isinstance(frame, BinaryFrame):
                await asyncio.sleep(self._latency)
            self._inbox.put_nowait(frame)


class MemoryRelayHub:
    """
    Relay rooms keyed by URL path. Members get a welcome with their id
    and the current members; everything a member sends is broadcast to
    the others, after a JSON round trip for control frames.
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.rooms: Dict[str, Dict[str, MemoryChannel]] = {}
        self.relayed: List[Tuple[str, str, Frame]] = []
        self.drop_types: Set[str] = set()
        self.unreachable = False
        self.connections = 0
        self._ids = itertools.count(1)

    async def connect(self, url: str) -> MemoryChannel:
        if self.unreachable:
            raise TransportError(f"Failed to connect to {url}: refused")

        room = url.rsplit('/room/', 1)[1]
        peer_id = f"peer-{next(self._ids):03d}"
        members = self.rooms.setdefault(room, {})

        channel = MemoryChannel(
            on_send=lambda ch, frame: self._broadcast(room, peer_id, frame),
            on_close=lambda ch: self._leave(room, peer_id),
            latency=self.latency,
        )
        channel.peer_id = peer_id
        channel.deliver(control('welcome', your_id=peer_id, peers=list(members)))
        for other in members.values():
            other.deliver(control('peer_join', peerId=peer_id))

        members[peer_id] = channel
        self.connections += 1
        return channel

    def _broadcast(self, room: str, sender: str, frame: Frame):
        self.relayed.append((room, sender, frame))
        if isinstance(frame, ControlFrame) and frame.type in self.drop_types:
            return
        wire = encode_frame(frame)
        for peer_id, channel in list(self.rooms.get(room, {}).items()):
            if peer_id != sender and channel.is_open:
                channel.deliver(decode_frame(wire))

    def _leave(self, room: str, peer_id: str):
        members = self.rooms.get(room, {})
        members.pop(peer_id, None)
        for channel in members.values():
            channel.deliver(control('peer_leave', peerId=peer_id))

    def binary_from(self, sender: str) -> int:
        return sum(
            1 for _, who, frame in self.relayed
            if who == sender and isinstance(frame, BinaryFrame)
        )


# === Keystream provider ===

class ScriptedChannel(Channel):
    """Replays a fixed list of frames, then closes with `close_code`."""

    def __init__(self, frames: List[Frame], close_code: int = NORMAL_CLOSURE):
        self._frames = list(frames)
        self._close_code = close_code
        self._open = True
        self.closed_by_client = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def send(self, frame: Frame):
        raise TransportError("read-only channel")

    async def recv(self) -> Frame:
        await asyncio.sleep(0)
        if self._frames:
            return self._frames.pop(0)
        self._open = False
        raise ChannelClosed(self._close_code)

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = ''):
        self._open = False
        self.closed_by_client = True


class FakeKeyProvider:
    """
    Connector for the keystream provider.

    Args:
        chunk_size: frame size
        close_code: close code after the last frame
        frames_before_close: cut the stream short after this many frames
    """

    def __init__(self, chunk_size: int = 16384, close_code: int = NORMAL_CLOSURE,
                 frames_before_close: Optional[int] = None, unreachable: bool = False):
        self.chunk_size = chunk_size
        self.close_code = close_code
        self.frames_before_close = frames_before_close
        self.unreachable = unreachable
        self.urls: List[str] = []
        self.channels: List[ScriptedChannel] = []

    async def connect(self, url: str) -> ScriptedChannel:
        self.urls.append(url)
        if self.unreachable:
            raise TransportError(f"Failed to connect to {url}: refused")

        size = int(url.rsplit('/', 1)[1])
        count = (size + self.chunk_size - 1) // self.chunk_size
        if self.frames_before_close is not None:
            count = min(count, self.frames_before_close)

        frames: List[Frame] = [
            BinaryFrame(secrets.token_bytes(self.chunk_size)) for _ in range(count)
        ]
        frames.append(ControlFrame({'type': 'complete', 'size': size}))
        channel = ScriptedChannel(frames, self.close_code)
        self.channels.append(channel)
        return channel


# === Peer transport ===

class FakeDataChannel(DataChannel):

    def __init__(self, label: str):
        self.label = label
        self.remote: Optional['FakeDataChannel'] = None
        self.messages_sent = 0
        self._state = 'connecting'
        self._on_open = None
        self._on_message = None
        self._on_close = None

    @property
    def ready_state(self) -> str:
        return self._state

    def send(self, data):
        if self._state != 'open':
            raise RuntimeError(f"channel is {self._state}")
        self.messages_sent += 1
        asyncio.get_running_loop().call_soon(self.remote._receive, data)

    def _receive(self, data):
        if self._state == 'open' and self._on_message:
            self._on_message(data)

    def _open(self):
        if self._state != 'connecting':
            return
        self._state = 'open'
        if self._on_open:
            self._on_open()

    def on_open(self, callback):
        self._on_open = callback

    def on_message(self, callback):
        self._on_message = callback

    def on_close(self, callback):
        self._on_close = callback

    def close(self):
        if self._state == 'closed':
            return
        self._state = 'closed'
        if self._on_close:
            self._on_close()
        if self.remote is not None and self.remote._state != 'closed':
            asyncio.get_running_loop().call_soon(self.remote.close)


class FakeConnection(PeerConnection):
    """Offer/answer state machine; pairs with its partner when the answer lands."""

    def __init__(self, network: 'FakeNetwork', peer_id: str):
        self.network = network
        self.peer_id = peer_id
        self.uid = next(network.uids)
        self.candidates: List[dict] = []
        self.channels: List[FakeDataChannel] = []
        self.closed = False
        self._signaling = 'stable'
        self._remote = None
        self._on_channel = None
        self._on_state = None
        self._on_candidate = None
        network.connections[self.uid] = self

    @property
    def signaling_state(self) -> str:
        return 'closed' if self.closed else self._signaling

    @property
    def has_remote_description(self) -> bool:
        return self._remote is not None

    def _description(self, kind: str) -> dict:
        asyncio.get_running_loop().call_soon(self._emit_candidate)
        return {'type': kind, 'sdp': f"fake:{self.uid}"}

    def _emit_candidate(self):
        if self._on_candidate and not self.closed:
            self._on_candidate({
                'candidate': f"candidate:{self.uid} 1 udp 2122260223 10.0.0.{self.uid % 250} 9 typ host",
                'sdpMid': '0',
                'sdpMLineIndex': 0,
            })

    async def create_offer(self) -> dict:
        self._signaling = 'have-local-offer'
        return self._description('offer')

    async def create_answer(self) -> dict:
        if self._signaling != 'have-remote-offer':
            raise RuntimeError(f"cannot answer in {self._signaling}")
        self._signaling = 'stable'
        return self._description('answer')

    async def set_remote_description(self, description: dict):
        other = self.network.connections[int(description['sdp'].split(':')[1])]
        if description['type'] == 'offer':
            if self._signaling != 'stable':
                raise RuntimeError(f"offer in {self._signaling}")
            self._signaling = 'have-remote-offer'
        else:
            if self._signaling != 'have-local-offer':
                raise RuntimeError(f"answer in {self._signaling}")
            self._signaling = 'stable'
            self.network.pair(offerer=self, answerer=other)
        self._remote = description

    async def add_candidate(self, candidate: dict):
        if self._remote is None:
            raise RuntimeError("candidate before remote description")
        self.candidates.append(candidate)

    def create_channel(self, label: str) -> FakeDataChannel:
        channel = FakeDataChannel(label)
        self.channels.append(channel)
        return channel

    def on_channel(self, callback):
        self._on_channel = callback

    def on_state_change(self, callback):
        self._on_state = callback

    def on_candidate(self, callback):
        self._on_candidate = callback

    def _set_state(self, state: str):
        if self._on_state and not self.closed:
            self._on_state(state)

    async def close(self):
        if self.closed:
            return
        self.closed = True
        for channel in self.channels:
            channel.close()


class FakeNetwork(ConnectionFactory):
    """
    Connection factory shared by every node of a test swarm.

    Args:
        connectable: when False, every pairing ends in a 'failed' state
        open_delay: seconds between the answer landing and channels opening
    """

    def __init__(self, connectable: bool = True, open_delay: float = 0.0):
        self.connectable = connectable
        self.open_delay = open_delay
        self.uids = itertools.count(1)
        self.connections: Dict[int, FakeConnection] = {}
        self.pairs: List[Tuple[FakeConnection, FakeConnection]] = []

    def create(self, peer_id: str) -> FakeConnection:
        return FakeConnection(self, peer_id)

    def pair(self, offerer: FakeConnection, answerer: FakeConnection):
        loop = asyncio.get_running_loop()
        self.pairs.append((offerer, answerer))

        if not self.connectable:
            loop.call_soon(offerer._set_state, 'failed')
            loop.call_soon(answerer._set_state, 'failed')
            return

        opened = []
        for local in offerer.channels:
            remote = FakeDataChannel(local.label)
            local.remote, remote.remote = remote, local
            answerer.channels.append(remote)
            if answerer._on_channel:
                answerer._on_channel(remote)
            opened.extend([local, remote])

        def open_all():
            if offerer.closed or answerer.closed:
                return
            for channel in opened:
                channel._open()
            offerer._set_state('connected')
            answerer._set_state('connected')

        loop.call_later(self.open_delay, open_all)


async def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01):
    """Poll until `predicate()` is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)
