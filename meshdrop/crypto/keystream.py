"""
Keystreams

Keystream A is generated locally from the OS CSPRNG. Keystream B comes
from a remote provider that streams random bytes over a WebSocket:

```
GET {provider}/ws/key/{total_bytes}
  <- binary frame (chunk_size bytes)      x ceil(total / chunk_size)
  <- text frame {"type":"complete",...}  (informational)
  <- close 1000
```

Any other close code, or a stream that ends short, fails the whole
transfer. There is no fallback key source.
"""

import logging
import secrets
from typing import Callable, List, Optional

from ..exceptions import KeyAcquisitionError, ProtocolError, TransportError
from ..file.chunker import CHUNK_SIZE, chunk_count
from ..transfer.channel import ChannelClosed, ChannelConnector, open_websocket
from ..transfer.protocol import BinaryFrame

logger = logging.getLogger(__name__)

Keystream = List[bytes]
KeyProgressCallback = Callable[[int, int], None]


def generate_local_keystream(total_chunks: int, chunk_size: int = CHUNK_SIZE) -> Keystream:
    """`total_chunks` buffers of `chunk_size` cryptographically secure bytes."""
    return [secrets.token_bytes(chunk_size) for _ in range(total_chunks)]


class KeystreamProvider:
    """
    Client for the remote random-keystream provider.

    Args:
        url: provider base URL (ws:// or wss://)
        chunk_size: provider frame size
        connector: coroutine opening a Channel for a URL
    """

    def __init__(self, url: str, chunk_size: int = CHUNK_SIZE,
                 connector: Optional[ChannelConnector] = None):
        self.url = url.rstrip('/')
        self.chunk_size = chunk_size
        self._connector = connector or open_websocket

    def stream_url(self, total_size: int) -> str:
        return f"{self.url}/ws/key/{total_size}"

    async def fetch(self, total_size: int,
                    progress_callback: KeyProgressCallback = None) -> Keystream:
        """
        Fetch ceil(total_size / chunk_size) keystream frames.

        Raises:
            KeyAcquisitionError: on connection failure, abnormal closure,
                or a short stream
        """
        expected = chunk_count(total_size, self.chunk_size)
        frames: Keystream = []
        if expected == 0:
            return frames

        try:
            channel = await self._connector(self.stream_url(total_size))
        except TransportError as e:
            raise KeyAcquisitionError(f"Keystream provider unreachable: {e}") from e

        try:
            while len(frames) < expected:
                try:
                    frame = await channel.recv()
                except ChannelClosed as closed:
                    if not closed.ok:
                        raise KeyAcquisitionError(
                            f"Keystream provider closed with code {closed.code}",
                            close_code=closed.code,
                        ) from closed
                    break
                except ProtocolError as e:
                    logger.warning(f"Ignoring malformed provider frame: {e}")
                    continue

                if isinstance(frame, BinaryFrame):
                    frames.append(frame.data)
                    if progress_callback:
                        progress_callback(len(frames), expected)
                else:
                    logger.debug(f"Keystream provider notice: {frame.type}")
        finally:
            await channel.close()

        if len(frames) < expected:
            raise KeyAcquisitionError(
                f"Keystream ended early: {len(frames)}/{expected} frames"
            )

        logger.info(f"Fetched remote keystream: {expected} frames ({total_size:,} bytes)")
        return frames
