"""
HTTP control surface for a running TransferOrchestrator.

Hosting and joining sessions, listing them, following their progress and
fetching a finished file. FastAPI shares the event loop with the sessions,
so handlers call straight into the orchestrator without any thread hop.

Progress is pushed as Server-Sent Events: one JSON object per ``data:``
line, with a comment heartbeat while a session is quiet.
"""

import asyncio
import logging
import json
from pathlib import Path
from typing import Optional, List
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response, StreamingResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from ..exceptions import (
    InvalidLinkError, KeyAcquisitionError, MeshDropError, SessionError, TransportError,
)
from ..transfer.events import EventType

logger = logging.getLogger(__name__)

# Orchestrator served by the app; None until create_app binds one
_orchestrator = None


# --- Request and response bodies ---

class ShareRequest(BaseModel):
    """Request to host a file."""
    file_path: str


class ReceiveRequest(BaseModel):
    """Request to join a session from its share link."""
    link: str


class NodeStatus(BaseModel):
    """Counters for the whole node."""
    sessions: int
    hosting: int
    receiving: int
    relay_url: str
    chunk_size: int


class SessionInfo(BaseModel):
    """Summary of one session."""
    session_id: str
    role: str
    stage: str
    file_name: str
    file_size: int
    total_chunks: int
    held_chunks: int
    progress_percent: float
    peers: int
    complete: bool
    error: Optional[str] = None


# --- Application ---

def create_app(orchestrator=None) -> FastAPI:
    """Build the control app around ``orchestrator``.

    Passing None gives an app whose session routes answer 503, which is
    what a node reports before its orchestrator has started.
    """
    global _orchestrator
    _orchestrator = orchestrator

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Log the app coming up and going down."""
        logger.info("Control API up")
        yield
        logger.info("Control API down")

    app = FastAPI(
        title="MeshDrop API",
        description="REST control API for peer-assisted encrypted file transfer",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def require_orchestrator():
        if not _orchestrator:
            raise HTTPException(status_code=503, detail="Orchestrator not initialized")
        return _orchestrator

    def require_session(session_id: str):
        orchestrator = require_orchestrator()
        try:
            return orchestrator.get_session(session_id)
        except SessionError:
            raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")

    def session_info(session) -> SessionInfo:
        info = session.to_dict()
        return SessionInfo(**{key: info[key] for key in SessionInfo.model_fields})

    # --- Node ---

    @app.get("/", tags=["General"])
    async def root():
        """Name, version and whether an orchestrator is attached."""
        return {
            "name": "MeshDrop",
            "version": "1.0.0",
            "status": "running" if _orchestrator else "not running",
        }

    @app.get("/status", response_model=NodeStatus, tags=["Node"])
    async def get_status():
        """Session counts and transport settings."""
        stats = require_orchestrator().get_stats()
        return NodeStatus(
            sessions=stats['sessions'],
            hosting=stats['hosting'],
            receiving=stats['receiving'],
            relay_url=stats['relay_url'],
            chunk_size=stats['chunk_size'],
        )

    # --- Sessions ---

    @app.get("/sessions", response_model=List[SessionInfo], tags=["Sessions"])
    async def list_sessions():
        """List all sessions."""
        orchestrator = require_orchestrator()
        return [session_info(s) for s in orchestrator.sessions.values()]

    @app.get("/sessions/{session_id}", tags=["Sessions"])
    async def get_session(session_id: str):
        """Detailed statistics for one session."""
        return require_session(session_id).get_stats()

    @app.post("/share", tags=["Sessions"])
    async def share_file(request: ShareRequest):
        """Host a file and return its share link."""
        orchestrator = require_orchestrator()

        file_path = Path(request.file_path).expanduser().resolve()

        logger.info(f"Hosting requested for {file_path}")

        if not file_path.is_file():
            status = 400 if file_path.exists() else 404
            raise HTTPException(status_code=status, detail=f"No regular file at {file_path}")

        try:
            link = await orchestrator.share(file_path)
        except (KeyAcquisitionError, TransportError) as e:
            logger.error(f"Share failed: {e}")
            raise HTTPException(status_code=502, detail=str(e))
        except MeshDropError as e:
            logger.error(f"Could not host {file_path}: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=str(e))

        session_id = link.split('://', 1)[1].split('/', 1)[0]
        return {"success": True, "link": link, "session_id": session_id}

    @app.post("/receive", response_model=SessionInfo, tags=["Sessions"])
    async def receive_file(request: ReceiveRequest):
        """Join a session as a receiver."""
        orchestrator = require_orchestrator()
        logger.info(f"Receive request for: {request.link}")

        try:
            session = await orchestrator.receive(request.link.strip())
        except InvalidLinkError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except SessionError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except TransportError as e:
            raise HTTPException(status_code=502, detail=str(e))

        return session_info(session)

    @app.get("/sessions/{session_id}/events", tags=["Sessions"])
    async def session_events(session_id: str):
        """
        Live session events as Server-Sent Events.

        Starts with a progress snapshot and ends after the completion or
        error event.
        """
        session = require_session(session_id)
        queue = session.events.subscribe()

        async def event_generator():
            snapshot = {'type': EventType.PROGRESS.value, 'data': session.progress().to_dict()}
            yield f"data: {json.dumps(snapshot)}\n\n"

            try:
                if session.result is not None or session.error is not None:
                    final = EventType.COMPLETE if session.result is not None else EventType.ERROR
                    data = session.result.to_dict() if session.result else {'error': str(session.error)}
                    yield f"data: {json.dumps({'type': final.value, 'data': data})}\n\n"
                    return

                while not session.closed:
                    try:
                        event = await asyncio.wait_for(queue.get(), timeout=0.5)
                    except asyncio.TimeoutError:
                        yield ": heartbeat\n\n"
                        continue

                    yield f"data: {json.dumps(event.to_dict())}\n\n"
                    if event.type in (EventType.COMPLETE, EventType.ERROR):
                        return
            finally:
                session.events.unsubscribe(queue)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            }
        )

    @app.get("/sessions/{session_id}/download", tags=["Sessions"])
    async def download(session_id: str):
        """The assembled file, once the receiver is complete."""
        session = require_session(session_id)
        result = getattr(session, 'result', None)
        if result is None:
            raise HTTPException(status_code=409, detail="Transfer not complete")

        return Response(
            content=result.data,
            media_type="application/octet-stream",
            headers={"Content-Disposition": f'attachment; filename="{Path(result.name).name}"'},
        )

    @app.delete("/sessions/{session_id}", tags=["Sessions"])
    async def close_session(session_id: str):
        """Disconnect a session."""
        success = await require_orchestrator().close_session(session_id)
        if not success:
            raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
        return {"success": True}

    return app


async def run_api_server(orchestrator, host: str = "127.0.0.1", port: int = 8080):
    """Serve the control app on the current loop until uvicorn exits."""
    import uvicorn

    server = uvicorn.Server(
        uvicorn.Config(create_app(orchestrator), host=host, port=port, log_level="info")
    )
    await server.serve()
