"""
Transfer Orchestrator - Main Controller

Owns every session in the process, keyed by session id:
- share(file_path): hash, key, and host a file; returns the share link
- receive(link): join a session as a receiver
- wait_complete(session_id): the assembled file once every chunk is held

Each session is an explicit object (HostSession / ReceiverSession) with
its own relay channel, peer mesh, tracker and cipher, so several
transfers can run side by side.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional, Union

from .config import Config
from .crypto import KeystreamProvider, SplitKeyCipher, set_backend
from .exceptions import SessionError
from .file import (
    FileChunker, FileMeta, make_share_link, parse_share_link, session_id_from_hash,
)
from .mesh import ConnectionFactory, RTCConnectionFactory
from .transfer.channel import ChannelConnector, open_websocket
from .transfer.events import TransferEvents, TransferResult
from .transfer.host import HostSession
from .transfer.receiver import ReceiverSession
from .transfer.session import TransferSession

logger = logging.getLogger(__name__)


class TransferOrchestrator:
    """
    Process-level registry of transfer sessions.

    Args:
        config: node configuration (defaults if omitted)
        relay_connector: opens relay room channels
        key_connector: opens keystream provider channels
        connection_factory: creates peer connections
    """

    def __init__(self, config: Optional[Config] = None,
                 relay_connector: Optional[ChannelConnector] = None,
                 key_connector: Optional[ChannelConnector] = None,
                 connection_factory: Optional[ConnectionFactory] = None):
        self.config = config or Config()
        self.sessions: Dict[str, TransferSession] = {}

        self._relay_connector = relay_connector or open_websocket
        self._key_connector = key_connector or open_websocket
        self._factory = connection_factory or RTCConnectionFactory(self.config.ice_servers)
        # session id -> [lock, holders and waiters]
        self._locks: Dict[str, list] = {}

        set_backend('numpy' if self.config.accelerated_xor else 'python')

    # === Host ===

    async def share(self, file_path: Union[str, Path],
                    events: Optional[TransferEvents] = None) -> str:
        """
        Host a file.

        1. Hash the file; the hash prefix is the session id
        2. Generate keystream A, fetch keystream B
        3. Join the relay room and wait for file requests

        Returns:
            Share link: scheme://<sessionId>/<fileName>

        Raises:
            FileNotFoundError: if the file does not exist
            KeyAcquisitionError: if keystream B cannot be fetched; nothing
                is announced in that case
            TransportError: if the relay is unreachable
        """
        file_path = Path(file_path)
        if not file_path.is_file():
            raise FileNotFoundError(f"File not found: {file_path}")

        chunk_size = self.config.chunk_size
        chunker = FileChunker(chunk_size)

        logger.info(f"Sharing file: {file_path.name}")
        content_hash = await chunker.compute_file_hash(file_path)
        session_id = session_id_from_hash(content_hash)
        link = make_share_link(session_id, file_path.name, self.config.link_scheme)

        async with self._session_lock(session_id):
            existing = self.sessions.get(session_id)
            if existing is not None:
                if isinstance(existing, HostSession) and existing.error is None:
                    logger.info(f"Already hosting {session_id}")
                    return link
                await self.close_session(session_id)

            meta = FileMeta.for_file(
                file_path.name, file_path.stat().st_size, session_id, chunk_size
            )
            plaintext = [data async for _, data in chunker.chunk_file(file_path)]

            provider = KeystreamProvider(
                self.config.key_provider_url, chunk_size, connector=self._key_connector
            )
            cipher = SplitKeyCipher(chunk_size, provider)
            cipher.generate_local(meta.total_chunks)
            await cipher.fetch_remote(meta.size)

            session = HostSession(
                meta, plaintext, cipher, self.config,
                self._relay_connector, self._factory, events,
            )
            await session.start()
            self.sessions[session_id] = session

        logger.info(f"Shared {meta.name} as session {session_id}")
        return link

    # === Receiver ===

    async def receive(self, link: str,
                      events: Optional[TransferEvents] = None) -> ReceiverSession:
        """
        Join a session as a receiver.

        Single-flight per session: a healthy receive already running for
        the same session is returned as is; a failed or finished one is
        torn down completely before the new one starts.

        Raises:
            InvalidLinkError: if the link does not parse
            SessionError: if this process is hosting the session
            TransportError: if the relay is unreachable
        """
        session_id, file_name = parse_share_link(link, self.config.link_scheme)

        async with self._session_lock(session_id):
            existing = self.sessions.get(session_id)
            if isinstance(existing, HostSession):
                raise SessionError(f"Session {session_id} is hosted by this node")
            if existing is not None:
                if existing.error is None and existing.result is None and not existing.closed:
                    logger.info(f"Receive for {session_id} already in progress")
                    return existing
                await self.close_session(session_id)

            session = ReceiverSession(
                session_id, file_name, self.config,
                self._relay_connector, self._factory, events,
            )
            await session.start()
            self.sessions[session_id] = session

        return session

    async def wait_complete(self, session_id: str,
                            timeout: Optional[float] = None) -> TransferResult:
        """
        Wait for a receiver to hold every chunk.

        Raises:
            SessionError: for unknown or hosted sessions
            asyncio.TimeoutError: if `timeout` elapses first
            MeshDropError: the error that ended the session
        """
        session = self.get_session(session_id)
        if not isinstance(session, ReceiverSession):
            raise SessionError(f"Session {session_id} is not receiving")
        return await asyncio.wait_for(session.wait_finished(), timeout)

    # === Registry ===

    def get_session(self, session_id: str) -> TransferSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionError(f"Unknown session: {session_id}")
        return session

    async def close_session(self, session_id: str) -> bool:
        """Disconnect one session. Returns False if it was unknown."""
        session = self.sessions.pop(session_id, None)
        if session is None:
            return False
        await session.close()
        return True

    async def stop(self):
        """Disconnect every session."""
        logger.info(f"Stopping orchestrator ({len(self.sessions)} sessions)")
        for session_id in list(self.sessions):
            await self.close_session(session_id)

    def list_sessions(self) -> List[dict]:
        return [session.to_dict() for session in self.sessions.values()]

    def get_stats(self) -> dict:
        hosting = sum(1 for s in self.sessions.values() if isinstance(s, HostSession))
        return {
            'sessions': len(self.sessions),
            'hosting': hosting,
            'receiving': len(self.sessions) - hosting,
            'relay_url': self.config.relay_url,
            'chunk_size': self.config.chunk_size,
            'details': [session.get_stats() for session in self.sessions.values()],
        }

    @asynccontextmanager
    async def _session_lock(self, session_id: str):
        """Serialize share/receive per session; the lock lives only while in use."""
        entry = self._locks.get(session_id)
        if entry is None:
            entry = self._locks[session_id] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[session_id]
