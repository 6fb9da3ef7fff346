"""
Relay Server HTTP/WebSocket Surface

Design Decision: Signaling Transport
====================================

Options Considered:
1. HTTP long-polling
   - Works everywhere, but adds latency to every signal
2. Server-sent events + POST
   - Two channels per participant
3. WebSocket
   - One bidirectional connection per participant
   - FastAPI/Starlette support it natively

Decision: One WebSocket per participant at ``/ws``
- Each inbound JSON object is one event for ``SignalingService.handle``
- Replies go back on the same socket; forwarded events arrive through the
  connection hub
- Plain HTTP endpoints expose liveness and read-only session state
"""

import logging
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .. import __version__
from ..config import Config
from ..session import SessionDirectory
from ..errors import MalformedMessage
from ..signaling import SignalingService, messages

logger = logging.getLogger(__name__)


# === Pydantic Models ===

class HealthStatus(BaseModel):
    """Liveness report (non-authoritative)."""
    status: str
    connectedClients: int
    activeSessions: int


class SessionStatus(BaseModel):
    """Read-only view of one session."""
    code: str
    hasReceiver: bool
    idleSeconds: float


# === API Creation ===

def create_service(config: Optional[Config] = None) -> SignalingService:
    """Build the signaling service from configuration."""
    config = config or Config()
    directory = SessionDirectory(
        idle_timeout=config.session_idle_timeout,
        sweep_interval=config.session_sweep_interval,
        max_code_attempts=config.max_code_attempts,
    )
    return SignalingService(directory)


def create_app(service: Optional[SignalingService] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        service: Signaling service to expose (default: built from Config())

    Returns:
        FastAPI application
    """
    service = service or create_service()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown."""
        logger.info("Relay server starting...")
        await service.directory.start()
        yield
        await service.directory.stop()
        logger.info("Relay server stopping...")

    app = FastAPI(
        title="peerdrop relay",
        description="Pairs peers by session code and forwards their signaling messages",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service

    # Browser peers connect from other origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # === Endpoints ===

    @app.get("/", tags=["General"])
    async def root():
        """API root - basic info."""
        return {
            "name": "peerdrop relay",
            "version": __version__,
        }

    @app.get("/health", response_model=HealthStatus, tags=["General"])
    async def health():
        """Connected participants and live sessions."""
        return HealthStatus(
            status="ok",
            connectedClients=len(service.hub),
            activeSessions=service.directory.get_stats()['active_sessions'],
        )

    @app.get("/sessions/{code}", response_model=SessionStatus, tags=["Sessions"])
    async def get_session(code: str):
        """Whether a session exists and has a receiver."""
        session = service.directory.get(code)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return SessionStatus(
            code=session.code,
            hasReceiver=session.receiver_id is not None,
            idleSeconds=round(session.idle_seconds(service.directory.now()), 3),
        )

    @app.get("/stats", tags=["General"])
    async def stats():
        """Relay counters."""
        return service.get_stats()

    @app.websocket("/ws")
    async def signaling_socket(websocket: WebSocket):
        """One participant's signaling connection."""
        await websocket.accept()
        participant_id = service.connect(websocket)
        try:
            while True:
                try:
                    message = await websocket.receive_json()
                except ValueError:
                    logger.warning(f"Non-JSON frame from {participant_id[:8]}")
                    await websocket.send_json(messages.error_reply(
                        messages.ERROR, MalformedMessage.reason, 'Frames must be JSON objects',
                    ))
                    continue

                reply = await service.handle(participant_id, message)
                if reply is not None:
                    await websocket.send_json(reply)
        except WebSocketDisconnect:
            logger.debug(f"WebSocket closed by {participant_id[:8]}")
        finally:
            await service.disconnect(participant_id)

    return app


async def run_api_server(config: Config):
    """
    Run the relay server.

    Args:
        config: Host, port and session settings
    """
    import uvicorn

    app = create_app(create_service(config))

    server_config = uvicorn.Config(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )
    server = uvicorn.Server(server_config)
    await server.serve()
