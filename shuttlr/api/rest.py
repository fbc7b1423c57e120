"""
Local Control API for a Session

Design Decision: API Framework
==============================

Options Considered:
1. FastAPI - async, pydantic validation, auto-docs
2. Plain websocket commands - one socket, but hand-rolled request/response
3. Flask - sync-focused, would need a thread bridge into the event loop

Decision: FastAPI
- Runs on the same event loop as the session
- Pydantic models document and validate requests
- Same stack as the development relay

API Design:
- One app drives one Session
- Sending is synchronous: POST /transfers returns when the transfer ended
- Cancel from a second request with DELETE /transfers/{id}
"""

import logging
from pathlib import Path
from typing import List, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .. import __version__
from ..errors import ChannelNotOpenError, SignalingError, TransferError
from ..session import Session

logger = logging.getLogger(__name__)


# === Pydantic Models ===

class SessionRequest(BaseModel):
    """Request to start a session."""
    room: str
    user: str
    is_initiator: bool = False


class SessionStatusResponse(BaseModel):
    """Session status response."""
    room: Optional[str]
    user: Optional[str]
    remote_peer: Optional[str]
    is_initiator: bool
    status: str
    error: Optional[str]
    channel_open: bool


class SendRequest(BaseModel):
    """Request to send a file to the connected peer."""
    file_path: str


class TransferInfo(BaseModel):
    """A live transfer."""
    transfer_id: str
    file_name: str
    file_size: int
    mime_type: str
    direction: str
    bytes_moved: int
    progress: int
    status: str


# === API Creation ===

def create_app(session: Session) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        session: Session instance to control

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown."""
        logger.info("API server starting...")
        yield
        logger.info("API server stopping...")
        await session.disconnect()

    app = FastAPI(
        title="shuttlr Control API",
        description="Local control API for a peer-to-peer file transfer session",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.session = session

    # Allow a local web UI
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # === Endpoints ===

    @app.get("/", tags=["General"])
    async def root():
        """API root - basic info."""
        return {
            "name": "shuttlr",
            "version": __version__,
            "status": session.status.value,
        }

    @app.get("/status", response_model=SessionStatusResponse, tags=["Session"])
    async def get_status():
        """Get session status."""
        return SessionStatusResponse(
            room=session.room,
            user=session.user,
            remote_peer=session.remote_peer,
            is_initiator=session.is_initiator,
            status=session.status.value,
            error=session.error,
            channel_open=session.channel_open,
        )

    @app.get("/stats", tags=["Session"])
    async def get_stats():
        """Get detailed session statistics."""
        return session.get_stats()

    # === Session Operations ===

    @app.post("/session", tags=["Session"])
    async def start_session(request: SessionRequest):
        """Join a room and start negotiating."""
        logger.info(f"Session request for room {request.room}")
        try:
            await session.initialize(request.room, request.user, request.is_initiator)
        except SignalingError as e:
            raise HTTPException(status_code=502, detail=e.message)
        return {"success": True, "status": session.status.value}

    @app.delete("/session", tags=["Session"])
    async def stop_session():
        """Leave the room and tear the session down."""
        await session.disconnect()
        return {"success": True, "status": session.status.value}

    # === Transfer Operations ===

    @app.get("/transfers", response_model=List[TransferInfo], tags=["Transfers"])
    async def list_transfers():
        """List live transfers in both directions."""
        return [
            TransferInfo(
                transfer_id=t.transfer_id,
                file_name=t.file_name,
                file_size=t.file_size,
                mime_type=t.mime_type,
                direction=t.direction.value,
                bytes_moved=t.bytes_moved,
                progress=t.progress,
                status=t.status.value,
            )
            for t in session.registry.active()
        ]

    @app.post("/transfers", tags=["Transfers"])
    async def send_file(request: SendRequest):
        """Send a file to the connected peer."""
        file_path = Path(request.file_path)

        # Handle relative paths - resolve to absolute
        if not file_path.is_absolute():
            file_path = file_path.resolve()

        logger.info(f"Send request for: {file_path}")

        if not file_path.is_file():
            raise HTTPException(status_code=404, detail=f"File not found: {file_path}")

        try:
            result = await session.send_file(file_path)
        except ChannelNotOpenError as e:
            raise HTTPException(status_code=409, detail=e.message)
        except TransferError as e:
            raise HTTPException(status_code=502, detail=e.message)

        return {
            "success": not result.cancelled,
            "cancelled": result.cancelled,
            "transfer_id": result.transfer_id,
            "file_name": result.file_name,
            "size": result.file_size,
            "chunks": result.total_chunks,
        }

    @app.delete("/transfers/{transfer_id}", tags=["Transfers"])
    async def cancel_transfer(transfer_id: str):
        """Cancel a live outgoing transfer."""
        if not session.cancel_transfer(transfer_id):
            raise HTTPException(status_code=404, detail="Transfer not found")
        return {"success": True}

    return app


async def run_api_server(session: Session, host: str = "127.0.0.1", port: int = 8080):
    """
    Run the API server.

    Args:
        session: Session instance
        host: Host to bind to
        port: Port to listen on
    """
    import uvicorn

    app = create_app(session)

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    await server.serve()
