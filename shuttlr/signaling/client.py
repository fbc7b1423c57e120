"""
Signaling Client

Keeps one websocket to the signaling relay open for the lifetime of a
session. A single reader task owns the socket's receive side and hands each
parsed message to the registered handlers, awaiting them one at a time, so
handlers for one session never run concurrently and always see messages in
arrival order.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..errors import MalformedMessageError, SignalingError
from .messages import SignalMessage

logger = logging.getLogger(__name__)

# Handlers may be plain functions or coroutines
MessageHandler = Callable[[SignalMessage], Union[None, Awaitable[None]]]
CloseHandler = Callable[[], Union[None, Awaitable[None]]]


async def _call(handler: Callable, *args: Any):
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


class SignalingClient:
    """
    JSON-over-websocket client for the signaling relay.

    Usage:
        client = SignalingClient()
        client.on_message(handle)
        await client.connect('ws://localhost:8765')
        await client.join('room-1', 'alice', is_initiator=True)
    """

    def __init__(self, connector: Optional[Callable[[str], Awaitable[Any]]] = None,
                 connect_timeout: float = 10.0):
        """
        Args:
            connector: Coroutine factory returning an open websocket
                       (defaults to websockets.connect)
            connect_timeout: Seconds to wait for the socket to open
        """
        self._connector = connector or websockets.connect
        self.connect_timeout = connect_timeout
        self.endpoint: Optional[str] = None

        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._message_handlers: List[MessageHandler] = []
        self._close_handlers: List[CloseHandler] = []
        self._open = False
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._open

    def on_message(self, handler: MessageHandler) -> MessageHandler:
        """Register a message handler. Usable as a decorator."""
        self._message_handlers.append(handler)
        return handler

    def on_close(self, handler: CloseHandler) -> CloseHandler:
        """Register a handler for remote/unexpected socket closure."""
        self._close_handlers.append(handler)
        return handler

    async def connect(self, endpoint: str) -> 'SignalingClient':
        """
        Open the socket and start the reader task.

        Raises:
            SignalingError: If the socket cannot be opened in time
        """
        if self._open:
            raise SignalingError("Signaling client is already connected")

        self.endpoint = endpoint
        try:
            self._ws = await asyncio.wait_for(
                self._connector(endpoint),
                timeout=self.connect_timeout
            )
        except asyncio.TimeoutError:
            raise SignalingError(f"Timed out connecting to signaling server {endpoint}")
        except (OSError, WebSocketException) as e:
            raise SignalingError(f"WebSocket connection error: {e}")

        self._open = True
        self._closing = False
        self._reader = asyncio.create_task(self._read_loop())
        logger.info(f"Signaling connected to {endpoint}")
        return self

    async def join(self, room: str, user_id: str, is_initiator: bool):
        """Join a room on the relay."""
        await self.send(SignalMessage.join(room, user_id, is_initiator))
        logger.info(f"Joined room {room} as {user_id} "
                    f"({'initiator' if is_initiator else 'responder'})")

    async def send(self, message: Union[SignalMessage, dict]):
        """Send one message. Raises SignalingError if the socket is gone."""
        if isinstance(message, dict):
            message = SignalMessage.from_dict(message)

        if not self._open or self._ws is None:
            raise SignalingError("Signaling socket is not open")

        try:
            await self._ws.send(message.to_json())
        except ConnectionClosed as e:
            self._open = False
            raise SignalingError(f"Signaling socket closed: {e}")

        logger.debug(f"Sent {message.type.value}")

    async def close(self):
        """Close the socket. Close handlers are not called for a local close."""
        self._closing = True
        was_open = self._open
        self._open = False

        if self._ws is not None and was_open:
            try:
                await self._ws.close()
            except (OSError, WebSocketException) as e:
                logger.debug(f"Error closing signaling socket: {e}")

        reader = self._reader
        self._reader = None
        if reader and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

        if was_open:
            logger.info("Signaling disconnected")

    # === Internals ===

    async def _read_loop(self):
        """Receive frames until the socket closes."""
        try:
            async for raw in self._ws:
                try:
                    message = SignalMessage.from_json(raw)
                except MalformedMessageError as e:
                    logger.warning(f"Ignoring signaling frame: {e.message}")
                    continue

                logger.debug(f"Received {message.type.value}")
                await self._dispatch(message)

        except ConnectionClosed as e:
            logger.info(f"Signaling socket closed: {e}")
        finally:
            self._open = False

        if not self._closing:
            for handler in list(self._close_handlers):
                try:
                    await _call(handler)
                except Exception as e:
                    logger.error(f"Error in signaling close handler: {e}", exc_info=True)

    async def _dispatch(self, message: SignalMessage):
        for handler in list(self._message_handlers):
            try:
                await _call(handler, message)
            except Exception as e:
                logger.error(f"Error handling {message.type.value} message: {e}",
                             exc_info=True)
