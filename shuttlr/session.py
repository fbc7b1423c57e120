"""
Session - Main Controller

Orchestrates one negotiation + transfer context:
- Signaling client for room membership and offer/answer/candidate exchange
- Negotiation state machine for the peer connection and its data channel
- Chunk sender / receiver on top of the data channel
- Transfer registry shared by both directions

A Session owns at most one live context. Calling initialize() again tears
the previous one down first, so two contexts never share a channel.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Set, Union

from .config import Config
from .errors import (
    ChannelNotOpenError, InvalidTransitionError, MalformedMessageError,
    NegotiationError, RoomFullError, SignalingError, TransferError
)
from .negotiation import NegotiationEvent, NegotiationStateMachine, SessionStatus
from .negotiation.machine import ACTIVE_STATUSES
from .signaling import SignalingClient, SignalMessage, SignalType
from .transfer import (
    CancelToken, ChunkReceiver, ChunkSender, FileSource, PathFileSource,
    RetryingSender, RetryPolicy, SendHandle, SendResult, TransferRegistry
)

logger = logging.getLogger(__name__)

# Handler types
StatusHandler = Callable[[SessionStatus], None]
ErrorHandler = Callable[[str], None]
ProgressHandler = Callable[[str, int], None]          # (file_name, percent)
FileCompleteHandler = Callable[[bytes, str, str], None]  # (payload, file_name, mime_type)


class Session:
    """
    One peer-to-peer file transfer session.

    Usage:
        session = Session(config)
        session.set_file_complete_handler(save)
        await session.initialize('room-1', 'alice', is_initiator=True)
        if await session.wait_until_connected(timeout=30):
            await session.send_file(Path('photo.jpg'))
        await session.disconnect()
    """

    def __init__(self, config: Optional[Config] = None,
                 peer_factory: Optional[Callable[[], Any]] = None,
                 signaling_factory: Optional[Callable[[], SignalingClient]] = None):
        """
        Args:
            config: Session configuration (uses defaults if not provided)
            peer_factory: Creates peer connections (default: aiortc)
            signaling_factory: Creates signaling clients (default: websockets)
        """
        self.config = config or Config()
        self._signaling_factory = signaling_factory or (
            lambda: SignalingClient(connect_timeout=self.config.connect_timeout)
        )

        # Components
        self.registry = TransferRegistry()
        self.machine = NegotiationStateMachine(
            send_signal=self._send_signal,
            peer_factory=peer_factory,
            ice_servers=self.config.ice_servers,
            channel_label=self.config.channel_label,
            on_status=self._on_status,
            on_channel=self._on_channel,
            on_error=self._on_error,
        )
        self.receiver = ChunkReceiver(
            on_progress=self._on_receive_progress,
            on_complete=self._on_file_complete,
            registry=self.registry,
        )
        self.signaling: Optional[SignalingClient] = None

        # Context
        self.room: Optional[str] = None
        self.user: Optional[str] = None
        self.remote_peer: Optional[str] = None
        self.is_initiator = False

        self._channel = None
        self._error: Optional[str] = None
        self._offer_task: Optional[asyncio.Task] = None
        self._send_lock = asyncio.Lock()
        self._sends: Set[SendHandle] = set()
        self._changed = asyncio.Event()

        # Handlers
        self._status_handler: Optional[StatusHandler] = None
        self._error_handler: Optional[ErrorHandler] = None
        self._send_progress_handler: Optional[ProgressHandler] = None
        self._receive_progress_handler: Optional[ProgressHandler] = None
        self._file_complete_handler: Optional[FileCompleteHandler] = None

        # Statistics
        self.files_sent = 0
        self.bytes_sent = 0

    # === Handler setters ===

    def set_status_handler(self, handler: Optional[StatusHandler]):
        self._status_handler = handler

    def set_error_handler(self, handler: Optional[ErrorHandler]):
        self._error_handler = handler

    def set_file_send_progress_handler(self, handler: Optional[ProgressHandler]):
        self._send_progress_handler = handler

    def set_file_receive_progress_handler(self, handler: Optional[ProgressHandler]):
        self._receive_progress_handler = handler

    def set_file_complete_handler(self, handler: Optional[FileCompleteHandler]):
        self._file_complete_handler = handler

    # === State ===

    @property
    def status(self) -> SessionStatus:
        return self.machine.status

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def is_connected(self) -> bool:
        return self.status == SessionStatus.CONNECTED

    @property
    def channel_open(self) -> bool:
        return self._channel is not None and self._channel.readyState == 'open'

    def get_stats(self) -> dict:
        """Get session statistics."""
        return {
            'room': self.room,
            'user': self.user,
            'remote_peer': self.remote_peer,
            'is_initiator': self.is_initiator,
            'status': self.status.value,
            'error': self.error,
            'channel_open': self.channel_open,
            'files_sent': self.files_sent,
            'bytes_sent': self.bytes_sent,
            'receiver': self.receiver.get_stats(),
            'transfers': self.registry.get_stats(),
        }

    # === Lifecycle ===

    async def initialize(self, room: str, user: str, is_initiator: bool):
        """
        Start a new context: create the peer connection, connect to the
        relay and join room.

        Raises:
            SignalingError: If the relay cannot be reached
        """
        if self.signaling is not None or self.status != SessionStatus.IDLE:
            logger.info("Tearing down previous session context")
            await self._teardown(SessionStatus.IDLE, 'Session replaced')

        self.room = room
        self.user = user
        self.is_initiator = is_initiator
        self.remote_peer = None
        self._error = None

        logger.info(f"Initializing session in room {room} as {user} "
                    f"({'initiator' if is_initiator else 'responder'})")
        await self.machine.initialize(room, is_initiator)

        client = self._signaling_factory()
        client.on_message(self._on_signal)
        client.on_close(self._on_signaling_closed)
        self.signaling = client

        try:
            await client.connect(self.config.signaling_url)
            await client.join(room, user, is_initiator)
        except SignalingError as e:
            logger.error(f"Could not join room {room}: {e.message}")
            self.signaling = None
            await client.close()
            await self._fail(e)
            raise

    async def disconnect(self):
        """Tear the context down and return to idle."""
        logger.info("Disconnecting session")
        await self._teardown(SessionStatus.IDLE, 'Session closed')
        self.room = None
        self.user = None
        self.is_initiator = False

    async def wait_until_connected(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until the peer connection is up and the data channel is open.

        Returns:
            False if the context failed, disconnected or timed out first
        """
        async def _wait() -> bool:
            while not (self.is_connected and self.channel_open):
                if self.status in (SessionStatus.FAILED, SessionStatus.DISCONNECTED):
                    return False
                self._changed.clear()
                await self._changed.wait()
            return True

        try:
            return await asyncio.wait_for(_wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False

    # === Transfers ===

    async def send_file(self, source: Union[FileSource, Path, str],
                        on_progress: Optional[Callable[[int, int, int], None]] = None
                        ) -> SendResult:
        """
        Send one file over the data channel, retrying failed attempts.

        Sends are serialized: a second call waits until the first transfer
        finished, so frames of two transfers never interleave.

        Raises:
            FileNotFoundError: If source is a path that does not exist
            ChannelNotOpenError: If the data channel is not open
            TransferError: If the transfer failed after all retries
        """
        if not isinstance(source, FileSource):
            source = PathFileSource(Path(source))
        if not self.channel_open:
            raise ChannelNotOpenError()

        def progress(percent: int, bytes_sent: int, total: int):
            if on_progress:
                on_progress(percent, bytes_sent, total)
            if self._send_progress_handler:
                self._send_progress_handler(source.name, percent)

        async with self._send_lock:
            if not self.channel_open:
                raise ChannelNotOpenError()

            sender = RetryingSender(
                ChunkSender.from_config(self._channel, self.config, registry=self.registry),
                RetryPolicy.from_config(self.config),
            )
            handle = sender.send(source, progress, token=CancelToken())
            self._sends.add(handle)
            try:
                result = await handle.outcome
            except TransferError as e:
                self._report_error(e.message)
                raise
            finally:
                self._sends.discard(handle)

        if not result.cancelled:
            self.files_sent += 1
            self.bytes_sent += result.bytes_sent
        return result

    def cancel_transfer(self, transfer_id: str) -> bool:
        """Cancel an outgoing transfer. Returns False if it is not live."""
        for handle in self._sends:
            if handle.transfer_id == transfer_id:
                logger.info(f"Cancelling transfer {transfer_id[:8]}")
                handle.cancel()
                return True
        return False

    # === Signaling ===

    async def _send_signal(self, message: SignalMessage):
        if self.signaling is None:
            raise SignalingError("Signaling socket is not open")
        await self.signaling.send(message)

    async def _on_signal(self, message: SignalMessage):
        """Dispatch one relay message. Runs on the signaling reader task."""
        if message.type == SignalType.USER_JOINED:
            self.remote_peer = message.get('user')
            logger.info(f"Peer joined: {self.remote_peer}")
            if self.is_initiator:
                self._schedule_offer()

        elif message.type == SignalType.OFFER:
            await self._negotiate(NegotiationEvent.OFFER, message.get('sdp'))

        elif message.type == SignalType.ANSWER:
            await self._negotiate(NegotiationEvent.ANSWER, message.get('sdp'))

        elif message.type == SignalType.ICE_CANDIDATE:
            try:
                await self.machine.add_remote_candidate(message.get('candidate'))
            except (InvalidTransitionError, MalformedMessageError) as e:
                logger.warning(f"Ignoring ICE candidate: {e.message}")

        elif message.type == SignalType.USER_LEFT:
            logger.info("Peer left the room")
            await self._teardown(SessionStatus.DISCONNECTED, 'Peer left the room')

        elif message.type == SignalType.ROOM_FULL:
            error = RoomFullError()
            logger.error(f"Could not join room {self.room}: {error.message}")
            await self._fail(error)

        else:
            logger.warning(f"Ignoring unexpected {message.type.value} message")

    async def _negotiate(self, event: NegotiationEvent, payload: Any = None):
        try:
            await self.machine.handle(event, payload)
        except InvalidTransitionError as e:
            logger.warning(f"Ignoring {event.value}: {e.message}")
        except MalformedMessageError as e:
            logger.warning(f"Ignoring {event.value}: {e.message}")
        except SignalingError as e:
            logger.error(f"Could not signal {event.value} reply: {e.message}")
            self._report_error(e.message)
        except NegotiationError as e:
            logger.error(f"Negotiation step {event.value} failed: {e.message}")

    def _schedule_offer(self):
        if self._offer_task is not None and not self._offer_task.done():
            return
        self._offer_task = asyncio.ensure_future(self._delayed_offer())

    async def _delayed_offer(self):
        # Give the remote side a moment to finish subscribing to the room
        await asyncio.sleep(self.config.offer_delay)
        await self._negotiate(NegotiationEvent.PEER_JOINED)

    async def _on_signaling_closed(self):
        self.signaling = None
        if self.status not in ACTIVE_STATUSES:
            return
        logger.warning("Signaling connection lost")
        self._abort_transfers('Signaling connection lost')
        self.machine.mark_disconnected()

    # === Data channel ===

    def _on_channel(self, channel):
        self._channel = channel
        channel.on('open', lambda: self._on_channel_open(channel))
        channel.on('close', lambda: self._on_channel_close(channel))
        channel.on('message', lambda data: self._on_channel_message(channel, data))

        # Channels announced by the remote side are usually open already
        if channel.readyState == 'open':
            self._on_channel_open(channel)

    def _on_channel_open(self, channel):
        if channel is not self._channel:
            return
        logger.info(f"Data channel '{channel.label}' open")
        self._changed.set()

    def _on_channel_close(self, channel):
        if channel is not self._channel:
            return
        logger.info(f"Data channel '{channel.label}' closed")
        self.receiver.abort_all('Data channel closed')
        self._changed.set()

    def _on_channel_message(self, channel, data):
        if channel is not self._channel:
            return
        self.receiver.on_frame(data)

    # === Component callbacks ===

    def _on_status(self, status: SessionStatus):
        if status == SessionStatus.CONNECTED:
            self._error = None
        elif status in (SessionStatus.FAILED, SessionStatus.DISCONNECTED):
            self._abort_transfers(self.machine.error or 'Peer connection lost')

        self._changed.set()
        if self._status_handler:
            self._status_handler(status)

    def _on_error(self, message: str):
        self._report_error(message)

    def _on_receive_progress(self, file_name: str, percent: int):
        if self._receive_progress_handler:
            self._receive_progress_handler(file_name, percent)

    def _on_file_complete(self, payload: bytes, file_name: str, mime_type: str):
        if self._file_complete_handler:
            self._file_complete_handler(payload, file_name, mime_type)

    def _report_error(self, message: str):
        self._error = message
        if self._error_handler:
            self._error_handler(message)

    # === Teardown ===

    async def _fail(self, error: SignalingError):
        """Tear the context down as failed, with error as the visible reason."""
        self.machine.fail(error.message)
        await self._teardown(SessionStatus.FAILED, error.message)

    def _abort_transfers(self, reason: str):
        for handle in list(self._sends):
            if not handle.done():
                handle.abort(TransferError(reason))
        self.receiver.abort_all(reason)

    async def _teardown(self, status: SessionStatus, reason: str):
        if self._offer_task is not None:
            if self._offer_task is not asyncio.current_task():
                self._offer_task.cancel()
            self._offer_task = None

        self._abort_transfers(reason)

        signaling, self.signaling = self.signaling, None
        if signaling is not None:
            await signaling.close()

        self._channel = None
        self.remote_peer = None
        await self.machine.close(status)
        self._changed.set()

    def __repr__(self) -> str:
        return f"Session(room={self.room!r}, user={self.user!r}, status={self.status.value})"
