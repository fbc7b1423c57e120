"""
Development Signaling Relay

A minimal room-based relay for running two peers locally. It only forwards
negotiation messages; file bytes never touch it.

Rules:
- A room holds at most two members; a third join gets "room-full"
- A join announces the newcomer to existing members with "user-joined",
  and each existing member to the newcomer
- offer / answer / ice-candidate are forwarded verbatim to the other members
- A disconnect sends "user-left" to whoever remains
"""

import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from ..errors import MalformedMessageError
from .messages import SignalMessage, SignalType

logger = logging.getLogger(__name__)

ROOM_CAPACITY = 2

RELAYED_TYPES = {SignalType.OFFER, SignalType.ANSWER, SignalType.ICE_CANDIDATE}


class RelayRooms:
    """Room membership: room name -> {websocket: user id}."""

    def __init__(self, capacity: int = ROOM_CAPACITY):
        self.capacity = capacity
        self._rooms: Dict[str, Dict[WebSocket, str]] = {}
        self._member_room: Dict[WebSocket, str] = {}

    def join(self, room: str, websocket: WebSocket, user: str) -> bool:
        """Add a member. Returns False if the room is full."""
        members = self._rooms.setdefault(room, {})
        if websocket not in members and len(members) >= self.capacity:
            return False
        members[websocket] = user
        self._member_room[websocket] = room
        return True

    def leave(self, websocket: WebSocket) -> Optional[str]:
        """Remove a member, returning the room it was in."""
        room = self._member_room.pop(websocket, None)
        if room is None:
            return None
        members = self._rooms.get(room, {})
        members.pop(websocket, None)
        if not members:
            self._rooms.pop(room, None)
        return room

    def room_of(self, websocket: WebSocket) -> Optional[str]:
        return self._member_room.get(websocket)

    def others(self, websocket: WebSocket) -> Dict[WebSocket, str]:
        room = self._member_room.get(websocket)
        if room is None:
            return {}
        return {ws: user for ws, user in self._rooms.get(room, {}).items()
                if ws is not websocket}

    def members(self, room: str) -> List[str]:
        return list(self._rooms.get(room, {}).values())

    def room_count(self) -> int:
        return len(self._rooms)


def create_relay_app(capacity: int = ROOM_CAPACITY) -> FastAPI:
    """Create the relay application."""
    rooms = RelayRooms(capacity)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Signaling relay starting...")
        yield
        logger.info("Signaling relay stopping...")

    app = FastAPI(
        title="shuttlr signaling relay",
        description="Room-based relay for WebRTC offer/answer/candidate exchange",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.rooms = rooms

    @app.get("/health")
    async def health():
        return {"status": "ok", "rooms": rooms.room_count()}

    @app.websocket("/")
    async def relay(websocket: WebSocket):
        await websocket.accept()

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = SignalMessage.from_json(raw)
                except MalformedMessageError as e:
                    logger.warning(f"Relay ignoring frame: {e.message}")
                    continue

                if message.type == SignalType.JOIN:
                    await _handle_join(websocket, message)
                elif message.type in RELAYED_TYPES:
                    await _forward(websocket, message)
                else:
                    logger.warning(f"Relay ignoring client-sent {message.type.value}")

        except WebSocketDisconnect:
            pass
        finally:
            others = rooms.others(websocket)
            room = rooms.leave(websocket)
            if room is not None:
                logger.info(f"Member left room {room}")
                left = SignalMessage.user_left().to_json()
                for other in others:
                    await _safe_send(other, left)

    async def _handle_join(websocket: WebSocket, message: SignalMessage):
        room = str(message.get('room'))
        user = str(message.get('user'))

        if rooms.room_of(websocket) not in (None, room):
            rooms.leave(websocket)

        if not rooms.join(room, websocket, user):
            logger.info(f"Room {room} is full, rejecting {user}")
            await _safe_send(websocket, SignalMessage.room_full().to_json())
            return

        logger.info(f"{user} joined room {room} ({len(rooms.members(room))}/{rooms.capacity})")
        for other, other_user in rooms.others(websocket).items():
            await _safe_send(other, SignalMessage.user_joined(user).to_json())
            await _safe_send(websocket, SignalMessage.user_joined(other_user).to_json())

    async def _forward(websocket: WebSocket, message: SignalMessage):
        others = rooms.others(websocket)
        if not others:
            logger.debug(f"No peer to forward {message.type.value} to")
            return
        raw = message.to_json()
        for other in others:
            await _safe_send(other, raw)

    async def _safe_send(websocket: WebSocket, raw: str):
        try:
            await websocket.send_text(raw)
        except (RuntimeError, WebSocketDisconnect) as e:
            logger.debug(f"Relay send failed: {e}")

    return app


async def run_relay_server(host: str = "0.0.0.0", port: int = 8765):
    """Run the relay with uvicorn."""
    import uvicorn

    config = uvicorn.Config(
        create_relay_app(),
        host=host,
        port=port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    await server.serve()
