import asyncio

import pytest
import pytest_asyncio

from meshdrop.crypto import SplitKeyCipher, encode_key_slice, generate_local_keystream
from meshdrop.exceptions import TransportError
from meshdrop.file import FileMeta
from meshdrop.transfer.events import EventType
from meshdrop.transfer.protocol import BinaryFrame, ControlFrame, control
from meshdrop.transfer.receiver import P2P, ReceivePhase, ReceiverSession

from .fakes import wait_for

CHUNK = 16
DATA = bytes(range(40))  # 3 chunks: 16 + 16 + 8


class HostScript:
    """Plays the host's half of the relay protocol into one receiver."""

    def __init__(self, data=DATA, chunk_size=CHUNK):
        self.meta = FileMeta.for_file('notes.txt', len(data), 'abcd', chunk_size)
        self.cipher = SplitKeyCipher(chunk_size)
        self.cipher.generate_local(self.meta.total_chunks)
        self.cipher.set_keys(key_b=generate_local_keystream(self.meta.total_chunks, chunk_size))
        self.ciphertext = [
            self.cipher.apply(i, data[i * chunk_size:(i + 1) * chunk_size])
            for i in range(self.meta.total_chunks)
        ]

    def file_start(self):
        return [ControlFrame(self.meta.to_message())]

    def key_a(self):
        return [control('keyA_start', count=len(self.cipher.key_a))] + [
            BinaryFrame(k) for k in self.cipher.key_a
        ]

    def key_b(self):
        return [control('keyB_start', count=len(self.cipher.key_b), via='relay')] + [
            BinaryFrame(k) for k in self.cipher.key_b
        ]

    def key_b_via_peer(self, to, host='peer-h'):
        return [ControlFrame({
            'type': 'keyB_start', 'count': len(self.cipher.key_b), 'via': 'peer',
            'to': to, 'from': host,
        })]

    def key_b_slices(self, peer_id, receiver, order=None):
        receiver.on_peer_message(peer_id, {'type': 'keyB_start', 'count': len(self.cipher.key_b)})
        for index in order or range(len(self.cipher.key_b)):
            receiver.on_peer_message(peer_id, {
                'type': 'keyB_chunk',
                'index': index,
                'data': encode_key_slice(self.cipher.key_b[index]),
            })

    def file_end(self):
        return [control('file_end', session=self.meta.session)]

    def chunks(self, indices=None):
        indices = range(self.meta.total_chunks) if indices is None else indices
        return [BinaryFrame(self.ciphertext[i]) for i in indices]

    def full_stream(self):
        return self.file_start() + self.key_a() + self.key_b() + self.chunks()


@pytest.fixture
def small_config(config):
    config.chunk_size = CHUNK
    return config


@pytest_asyncio.fixture
async def receiver(small_config, hub, network):
    session = ReceiverSession('abcd', 'notes.txt', small_config, hub.connect, network)
    await session.start()
    await wait_for(lambda: session.my_id)
    yield session
    await session.close()


def feed(session, frames):
    for frame in frames:
        session.relay.deliver(frame)


async def finished(session):
    return await asyncio.wait_for(session.wait_finished(), 5)


@pytest.mark.asyncio
async def test_requests_file_on_welcome(receiver):
    requests = [f for f in receiver.relay.sent if isinstance(f, ControlFrame)]
    assert requests[0].type == 'file_request'
    assert requests[0].get('session') == 'abcd'
    assert requests[0].get('from') == receiver.my_id
    assert receiver.phase == ReceivePhase.AWAITING_METADATA


@pytest.mark.asyncio
async def test_relay_stream_in_order(receiver):
    host = HostScript()
    events = []
    receiver.events.on(EventType.CHUNK_RECEIVED, events.append)

    feed(receiver, host.full_stream())
    result = await finished(receiver)

    assert result.data == DATA
    assert result.name == 'notes.txt'
    assert (receiver.sources.relay, receiver.sources.p2p) == (3, 0)
    assert [e.data['index'] for e in events] == [0, 1, 2]
    assert receiver.phase == ReceivePhase.COMPLETE
    assert receiver.stage == 'seeding'


@pytest.mark.asyncio
async def test_out_of_sequence_frames_are_dropped(receiver):
    host = HostScript()

    # Binary before any file_start, key B before key A, binary outside a key window
    feed(receiver, [BinaryFrame(b'stray')])
    feed(receiver, host.file_start())
    feed(receiver, [host.key_b()[0], BinaryFrame(b'noise')])
    feed(receiver, host.key_a() + host.key_b() + host.chunks())

    result = await finished(receiver)
    assert result.data == DATA


@pytest.mark.asyncio
async def test_chunks_before_keys_are_buffered(receiver):
    host = HostScript()
    feed(receiver, host.file_start())
    await wait_for(lambda: receiver.phase == ReceivePhase.AWAITING_KEY_A)

    receiver.accept_chunk(1, host.ciphertext[1], P2P, 'peer-x')
    assert receiver.tracker.held_count == 0

    feed(receiver, host.key_a() + host.key_b())
    await wait_for(lambda: receiver.tracker.has_chunk(1))
    assert receiver.tracker.get_chunk(1) == DATA[16:32]

    feed(receiver, host.chunks())
    result = await finished(receiver)

    assert result.data == DATA
    assert (receiver.sources.relay, receiver.sources.p2p) == (2, 1)
    assert receiver.duplicates == 1


@pytest.mark.asyncio
async def test_zero_byte_file(receiver):
    host = HostScript(data=b'')
    assert host.meta.total_chunks == 0

    feed(receiver, host.full_stream())
    result = await finished(receiver)

    assert result.data == b''
    assert result.size == 0


@pytest.mark.asyncio
async def test_restream_after_completion_is_ignored(receiver):
    host = HostScript()
    feed(receiver, host.full_stream())
    result = await finished(receiver)

    feed(receiver, host.file_start() + [BinaryFrame(b'\xff' * CHUNK)] * 4)
    await asyncio.sleep(0.05)

    assert receiver.phase == ReceivePhase.COMPLETE
    assert receiver.result is result
    assert receiver.tracker.assemble_data() == DATA


@pytest.mark.asyncio
async def test_key_b_over_peer_link(receiver):
    host = HostScript()
    feed(receiver, host.file_start() + host.key_a())
    feed(receiver, host.key_b_via_peer(to=receiver.my_id))
    feed(receiver, host.chunks())
    await wait_for(lambda: receiver.phase == ReceivePhase.STREAMING and receiver.relay_index == 3)
    assert receiver.tracker.held_count == 0

    host.key_b_slices('peer-h', receiver, order=(2, 0, 1))

    result = await finished(receiver)
    assert result.data == DATA
    assert receiver.sources.relay == 3


@pytest.mark.asyncio
async def test_serves_host_ciphertext_to_peers(receiver, monkeypatch):
    host = HostScript()
    feed(receiver, host.full_stream())
    await finished(receiver)

    served = []
    monkeypatch.setattr(receiver.mesh, 'send_chunk',
                        lambda peer_id, index, data: served.append((peer_id, index, data)))

    receiver.on_chunk_request('peer-y', 1)
    receiver.on_chunk_request('peer-y', 7)
    assert served == [('peer-y', 1, host.ciphertext[1])]


@pytest.mark.asyncio
async def test_relay_loss_fails_session(receiver):
    errors = []
    receiver.events.on(EventType.ERROR, errors.append)

    receiver.relay.drop()
    with pytest.raises(TransportError):
        await finished(receiver)

    assert receiver.stage == 'failed'
    assert errors[0].data['kind'] == 'TransportError'


def file_requests(session):
    return [f for f in session.relay.sent if isinstance(f, ControlFrame) and f.type == 'file_request']


@pytest.mark.asyncio
async def test_key_b_sent_to_another_receiver(receiver):
    host = HostScript()
    feed(receiver, host.file_start() + host.key_a() + host.key_b_via_peer(to='peer-other'))
    feed(receiver, host.chunks() + host.file_end())

    # Ciphertext is kept, and a stream of our own is requested
    await wait_for(lambda: len(file_requests(receiver)) == 2)
    assert receiver.tracker.held_count == 0
    assert receiver.phase == ReceivePhase.STREAMING

    feed(receiver, host.full_stream() + host.file_end())
    result = await finished(receiver)

    assert result.data == DATA
    assert receiver.sources.relay == 3
    assert len(file_requests(receiver)) == 2


@pytest.mark.asyncio
async def test_only_losing_the_key_b_host_requests_restream(receiver):
    host = HostScript()
    feed(receiver, host.file_start() + host.key_a() + host.key_b_via_peer(to=receiver.my_id))
    await wait_for(lambda: receiver.phase == ReceivePhase.STREAMING)

    receiver.on_peer_disconnected('peer-other')
    await asyncio.sleep(0.02)
    assert len(file_requests(receiver)) == 1

    receiver.on_peer_disconnected('peer-h')
    await wait_for(lambda: len(file_requests(receiver)) == 2)


@pytest.mark.asyncio
async def test_key_b_from_wrong_peer_is_ignored(receiver):
    host = HostScript()
    feed(receiver, host.file_start() + host.key_a() + host.key_b_via_peer(to=receiver.my_id))
    feed(receiver, host.chunks())
    await wait_for(lambda: receiver.relay_index == 3)

    host.key_b_slices('peer-x', receiver)
    assert len(receiver.cipher.key_b) == 0

    host.key_b_slices('peer-h', receiver)
    result = await finished(receiver)
    assert result.data == DATA


@pytest.mark.asyncio
async def test_new_peer_is_only_asked_for_announced_chunks(receiver, monkeypatch):
    host = HostScript()
    feed(receiver, host.file_start() + host.key_a() + host.key_b())
    await wait_for(lambda: receiver.phase == ReceivePhase.STREAMING)

    asked = []
    monkeypatch.setattr(receiver.mesh, 'request_chunk',
                        lambda peer_id, index: asked.append((peer_id, index)) or True)
    receiver.on_peer_connected('peer-x')

    assert asked == []
    assert receiver.tracker.get_stats()['requested'] == 0


@pytest.mark.asyncio
async def test_chunk_of_wrong_length_is_dropped(receiver):
    host = HostScript()
    feed(receiver, host.file_start() + host.key_a() + host.key_b())
    await wait_for(lambda: receiver.phase == ReceivePhase.STREAMING)

    receiver.accept_chunk(2, host.ciphertext[2] + b'!', P2P, 'peer-x')
    assert not receiver.tracker.has_chunk(2)

    feed(receiver, host.chunks())
    result = await finished(receiver)
    assert result.data == DATA
    assert receiver.sources.p2p == 0
