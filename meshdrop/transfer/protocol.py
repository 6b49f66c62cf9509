"""
Swarm Wire Protocol

Design Decision: Frame Discrimination
=====================================

Options Considered:
1. Inspect the runtime type of every message (str vs bytes) at each use
   - What a browser WebSocket hands you
   - Spreads type checks through every handler

2. One binary envelope for everything (length + JSON header + payload)
   - Uniform, but the relay and the browser peers speak plain JSON text

3. Tagged frames decoded once at the channel boundary
   - Handlers match on ControlFrame / BinaryFrame
   - Wire format stays compatible with text/binary WebSocket messages

Decision: Tagged frames
- Text messages carry JSON control objects with a "type" field
- Binary messages carry ciphertext (relay) or an indexed chunk (peer link)

Peer chunk frame:
```
+-------------------------+------------------------+
| Chunk index (4B, BE)    | Ciphertext             |
+-------------------------+------------------------+
```
"""

import json
import struct
import logging
from enum import Enum
from typing import Any, Dict, Tuple, Union
from dataclasses import dataclass, field

from ..exceptions import ProtocolError

logger = logging.getLogger(__name__)

CHUNK_HEADER = struct.Struct('>I')


class RelayMessageType(Enum):
    """Control messages exchanged through the relay room."""
    # Room membership
    WELCOME = "welcome"
    PEER_JOIN = "peer_join"
    PEER_LEAVE = "peer_leave"

    # File transfer
    FILE_REQUEST = "file_request"
    FILE_START = "file_start"
    FILE_END = "file_end"

    # Key delivery (followed by `count` binary frames)
    KEY_A_START = "keyA_start"
    KEY_B_START = "keyB_start"

    # Peer-link signaling envelope
    SIGNAL = "signal"


class PeerMessageType(Enum):
    """Control messages on a direct peer channel."""
    HAVE_CHUNKS = "have_chunks"
    WANT_CHUNK = "want_chunk"

    # Keystream B delivered over the peer link
    KEY_B_START = "keyB_start"
    KEY_B_CHUNK = "keyB_chunk"


@dataclass
class ControlFrame:
    """A structured (JSON text) frame."""
    message: Dict[str, Any] = field(default_factory=dict)

    @property
    def type(self) -> str:
        return str(self.message.get('type', ''))

    def get(self, key: str, default: Any = None) -> Any:
        return self.message.get(key, default)


@dataclass
class BinaryFrame:
    """A raw binary frame."""
    data: bytes = b''


Frame = Union[ControlFrame, BinaryFrame]


def decode_frame(raw: Union[str, bytes, bytearray, memoryview]) -> Frame:
    """
    Turn a transport message into a tagged frame.

    Raises:
        ProtocolError: if a text message is not a JSON object
    """
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return BinaryFrame(bytes(raw))

    try:
        message = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Malformed control frame: {e}") from e

    if not isinstance(message, dict) or 'type' not in message:
        raise ProtocolError(f"Control frame without a type: {raw[:80]!r}")

    return ControlFrame(message)


def encode_frame(frame: Frame) -> Union[str, bytes]:
    """Turn a tagged frame back into a transport message."""
    if isinstance(frame, BinaryFrame):
        return frame.data
    return json.dumps(frame.message)


def control(msg_type: Union[RelayMessageType, PeerMessageType, str], **fields: Any) -> ControlFrame:
    """Build a control frame: control(RelayMessageType.FILE_END, session=...)."""
    type_value = msg_type.value if isinstance(msg_type, Enum) else msg_type
    return ControlFrame({'type': type_value, **fields})


def pack_chunk(index: int, data: bytes) -> bytes:
    """Prefix ciphertext with its big-endian chunk index."""
    return CHUNK_HEADER.pack(index) + data


def unpack_chunk(packet: bytes) -> Tuple[int, bytes]:
    """
    Strip the chunk-index header.

    Raises:
        ProtocolError: if the packet is shorter than the header
    """
    if len(packet) < CHUNK_HEADER.size:
        raise ProtocolError(f"Chunk frame too short: {len(packet)} bytes")
    (index,) = CHUNK_HEADER.unpack_from(packet)
    return index, bytes(packet[CHUNK_HEADER.size:])
