"""
Mesh Module - Direct Peer Links

Relay-signaled WebRTC data channels, one per remote participant.
"""

from .peer import PeerLink, PeerPhase
from .rtc import ConnectionFactory, PeerConnection, DataChannel, RTCConnectionFactory
from .manager import PeerLinkManager, PeerLinkListener

__all__ = [
    'PeerLink',
    'PeerPhase',
    'ConnectionFactory',
    'PeerConnection',
    'DataChannel',
    'RTCConnectionFactory',
    'PeerLinkManager',
    'PeerLinkListener',
]
