"""
Transfer Module - Wire Protocol, Channels, and Session Events

Host and receiver sessions live in .host and .receiver; import them from
there (they depend on the crypto and mesh packages, which depend on this
one).
"""

from .protocol import (
    RelayMessageType, PeerMessageType, ControlFrame, BinaryFrame, Frame,
    decode_frame, encode_frame, control, pack_chunk, unpack_chunk,
)
from .channel import Channel, ChannelClosed, WebSocketChannel, open_websocket
from .events import (
    EventType, TransferEvent, TransferEvents, TransferProgress, TransferResult,
    SourceAccounting,
)

__all__ = [
    'RelayMessageType',
    'PeerMessageType',
    'ControlFrame',
    'BinaryFrame',
    'Frame',
    'decode_frame',
    'encode_frame',
    'control',
    'pack_chunk',
    'unpack_chunk',
    'Channel',
    'ChannelClosed',
    'WebSocketChannel',
    'open_websocket',
    'EventType',
    'TransferEvent',
    'TransferEvents',
    'TransferProgress',
    'TransferResult',
    'SourceAccounting',
]
