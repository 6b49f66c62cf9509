"""
Message Channels

A Channel is an ordered, message-oriented pipe that yields tagged frames.
The relay room and the keystream provider are both reached through one;
the engine only ever sees ControlFrame / BinaryFrame values and a
buffered-byte count for backpressure.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from ..exceptions import MeshDropError, ProtocolError, TransportError
from .protocol import Frame, decode_frame, encode_frame

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000
GOING_AWAY = 1001
ABNORMAL_CLOSURE = 1006


class ChannelClosed(MeshDropError):
    """The remote end closed the channel."""

    def __init__(self, code: int = ABNORMAL_CLOSURE, reason: str = ''):
        super().__init__(f"Channel closed ({code}) {reason}".strip())
        self.code = code
        self.reason = reason

    @property
    def ok(self) -> bool:
        return self.code == NORMAL_CLOSURE


class Channel(ABC):
    """Ordered frame channel."""

    @abstractmethod
    async def send(self, frame: Frame):
        """Send one frame. Raises TransportError if the channel is gone."""

    @abstractmethod
    async def recv(self) -> Frame:
        """
        Receive the next frame.

        Raises:
            ChannelClosed: when the remote end closed
            ProtocolError: when the message could not be decoded
        """

    @abstractmethod
    async def close(self, code: int = NORMAL_CLOSURE, reason: str = ''):
        pass

    @property
    @abstractmethod
    def is_open(self) -> bool:
        pass

    @property
    def buffered_amount(self) -> int:
        """Bytes queued for sending but not yet flushed."""
        return 0

    async def frames(self) -> AsyncIterator[Frame]:
        """
        Iterate frames until the channel closes.

        Malformed frames are logged and skipped. A normal closure ends the
        iteration; any other closure is raised as ChannelClosed.
        """
        while True:
            try:
                frame = await self.recv()
            except ProtocolError as e:
                logger.warning(f"Dropping malformed frame: {e}")
                continue
            except ChannelClosed as closed:
                if closed.code in (NORMAL_CLOSURE, GOING_AWAY):
                    return
                raise
            yield frame


ChannelConnector = Callable[[str], Awaitable[Channel]]


class WebSocketChannel(Channel):
    """Channel over a `websockets` client connection."""

    def __init__(self, ws):
        self._ws = ws
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed

    @property
    def buffered_amount(self) -> int:
        transport = getattr(self._ws, 'transport', None)
        if transport is None:
            return 0
        return transport.get_write_buffer_size()

    async def send(self, frame: Frame):
        if self._closed:
            raise TransportError("Channel closed")
        try:
            await self._ws.send(encode_frame(frame))
        except ConnectionClosed as e:
            self._closed = True
            raise TransportError(f"Send failed: {e}") from e

    async def recv(self) -> Frame:
        try:
            raw = await self._ws.recv()
        except ConnectionClosed as e:
            self._closed = True
            close = e.rcvd
            if close is None:
                raise ChannelClosed(ABNORMAL_CLOSURE, 'no close frame') from e
            raise ChannelClosed(close.code, close.reason) from e
        return decode_frame(raw)

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = ''):
        if not self._closed:
            self._closed = True
            await self._ws.close(code, reason)


async def open_websocket(url: str, timeout: Optional[float] = 10.0) -> WebSocketChannel:
    """
    Open a WebSocket channel.

    Raises:
        TransportError: if the connection could not be established
    """
    try:
        ws = await websockets.connect(url, max_size=None, open_timeout=timeout)
    except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
        raise TransportError(f"Failed to connect to {url}: {e}") from e
    logger.debug(f"WebSocket connected: {url}")
    return WebSocketChannel(ws)
