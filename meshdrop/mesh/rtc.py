"""
Peer Transport

Design Decision: Direct Peer Transport
======================================

Options Considered:
1. Raw TCP/UDP between peers
   - Simple, but browsers cannot open raw sockets
   - Needs our own NAT traversal

2. WebRTC data channels (aiortc)
   - Same transport browser peers use, so Python and browser nodes mesh
   - ICE/STUN connectivity negotiation built in
   - Reliable, ordered SCTP channel per peer

Decision: WebRTC data channels via aiortc
- The manager talks to a small PeerConnection/DataChannel interface
- RTCConnectionFactory binds that interface to aiortc

aiortc gathers ICE candidates before the local description resolves and
embeds them in the SDP, so it never trickles candidates itself; remote
candidates trickled by browser peers are still applied.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Union

from aiortc import (
    RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

logger = logging.getLogger(__name__)

Description = Dict[str, str]
Candidate = Dict[str, Any]
Message = Union[str, bytes]


class DataChannel(ABC):
    """Reliable ordered message channel to one peer."""

    @property
    @abstractmethod
    def ready_state(self) -> str:
        """"connecting", "open", "closing" or "closed"."""

    @property
    def buffered_amount(self) -> int:
        return 0

    @abstractmethod
    def send(self, data: Message):
        pass

    @abstractmethod
    def on_open(self, callback: Callable[[], None]):
        pass

    @abstractmethod
    def on_message(self, callback: Callable[[Message], None]):
        pass

    @abstractmethod
    def on_close(self, callback: Callable[[], None]):
        pass

    @abstractmethod
    def close(self):
        pass


class PeerConnection(ABC):
    """One offer/answer negotiated connection."""

    @property
    @abstractmethod
    def signaling_state(self) -> str:
        """"stable", "have-local-offer", "have-remote-offer" or "closed"."""

    @property
    @abstractmethod
    def has_remote_description(self) -> bool:
        pass

    @abstractmethod
    async def create_offer(self) -> Description:
        """Create an offer and apply it as the local description."""

    @abstractmethod
    async def create_answer(self) -> Description:
        """Create an answer and apply it as the local description."""

    @abstractmethod
    async def set_remote_description(self, description: Description):
        pass

    @abstractmethod
    async def add_candidate(self, candidate: Candidate):
        pass

    @abstractmethod
    def create_channel(self, label: str) -> DataChannel:
        pass

    @abstractmethod
    def on_channel(self, callback: Callable[[DataChannel], None]):
        """Called with channels opened by the remote side."""

    @abstractmethod
    def on_state_change(self, callback: Callable[[str], None]):
        pass

    @abstractmethod
    def on_candidate(self, callback: Callable[[Candidate], None]):
        """Called with local candidates to trickle to the remote side."""

    @abstractmethod
    async def close(self):
        pass


class ConnectionFactory(ABC):

    @abstractmethod
    def create(self, peer_id: str) -> PeerConnection:
        pass


# === aiortc binding ===

class RTCChannel(DataChannel):
    """DataChannel over aiortc's RTCDataChannel."""

    def __init__(self, channel):
        self._channel = channel

    @property
    def ready_state(self) -> str:
        return self._channel.readyState

    @property
    def buffered_amount(self) -> int:
        return self._channel.bufferedAmount

    def send(self, data: Message):
        self._channel.send(data)

    def on_open(self, callback: Callable[[], None]):
        self._channel.on('open', callback)

    def on_message(self, callback: Callable[[Message], None]):
        self._channel.on('message', callback)

    def on_close(self, callback: Callable[[], None]):
        self._channel.on('close', callback)

    def close(self):
        self._channel.close()


class RTCConnection(PeerConnection):
    """PeerConnection over aiortc's RTCPeerConnection."""

    def __init__(self, configuration: RTCConfiguration):
        self._pc = RTCPeerConnection(configuration)

    @property
    def signaling_state(self) -> str:
        return self._pc.signalingState

    @property
    def has_remote_description(self) -> bool:
        return self._pc.remoteDescription is not None

    def _local(self) -> Description:
        local = self._pc.localDescription
        return {'type': local.type, 'sdp': local.sdp}

    async def create_offer(self) -> Description:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        return self._local()

    async def create_answer(self) -> Description:
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        return self._local()

    async def set_remote_description(self, description: Description):
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description['sdp'], type=description['type'])
        )

    async def add_candidate(self, candidate: Candidate):
        line = candidate.get('candidate') or ''
        if not line:
            return  # end-of-candidates marker
        if line.startswith('candidate:'):
            line = line[len('candidate:'):]
        ice = candidate_from_sdp(line)
        ice.sdpMid = candidate.get('sdpMid')
        ice.sdpMLineIndex = candidate.get('sdpMLineIndex')
        await self._pc.addIceCandidate(ice)

    def create_channel(self, label: str) -> DataChannel:
        return RTCChannel(self._pc.createDataChannel(label, ordered=True))

    def on_channel(self, callback: Callable[[DataChannel], None]):
        self._pc.on('datachannel', lambda channel: callback(RTCChannel(channel)))

    def on_state_change(self, callback: Callable[[str], None]):
        self._pc.on('connectionstatechange', lambda: callback(self._pc.connectionState))

    def on_candidate(self, callback: Callable[[Candidate], None]):
        pass

    async def close(self):
        await self._pc.close()


class RTCConnectionFactory(ConnectionFactory):
    """Creates aiortc connections configured with STUN servers."""

    def __init__(self, ice_servers: Optional[List[str]] = None):
        servers = [RTCIceServer(urls=url) for url in (ice_servers or [])]
        self.configuration = RTCConfiguration(iceServers=servers)

    def create(self, peer_id: str) -> PeerConnection:
        logger.debug(f"Creating RTC connection for {peer_id}")
        return RTCConnection(self.configuration)
