"""
Negotiation State Machine

Design Decision: Explicit Transition Table
==========================================

Signaling messages race against local peer-connection state: an answer can
arrive after we already rolled back, a second offer can arrive mid
negotiation, candidates can arrive before any description. Instead of
scattering state checks over callbacks, every negotiation event is looked up
in a table keyed by (event, signaling state). A missing entry is a named
InvalidTransitionError the caller logs and drops.

    (PEER_JOINED, stable)           -> create channel + offer, send offer
    (OFFER,       stable)           -> set remote, answer, send, flush queue
    (ANSWER,      have-local-offer) -> set remote, flush queue

Remote ICE candidates are accepted in every state while a peer connection
exists; they are queued until a remote description is set.

Lifecycle status (idle -> connecting -> connected, failed/disconnected from
any non-idle state) follows the transport's connection-state callback.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from ..errors import InvalidTransitionError, NegotiationError
from ..signaling.messages import SignalMessage
from .candidates import CandidateQueue
from .transport import (
    candidate_from_message, candidate_to_message, create_peer_connection,
    description_from_message, description_to_message
)

logger = logging.getLogger(__name__)


class SessionStatus(Enum):
    """Lifecycle of one negotiation + transfer context."""
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


class SignalingState(Enum):
    """Mirror of RTCPeerConnection.signalingState."""
    STABLE = "stable"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    CLOSED = "closed"


class NegotiationEvent(Enum):
    PEER_JOINED = "peer-joined"
    OFFER = "offer"
    ANSWER = "answer"


TRANSITIONS: Dict[Tuple[NegotiationEvent, SignalingState], str] = {
    (NegotiationEvent.PEER_JOINED, SignalingState.STABLE): '_send_offer',
    (NegotiationEvent.OFFER, SignalingState.STABLE): '_accept_offer',
    (NegotiationEvent.ANSWER, SignalingState.HAVE_LOCAL_OFFER): '_accept_answer',
}

ACTIVE_STATUSES = {SessionStatus.CONNECTING, SessionStatus.CONNECTED}


class NegotiationStateMachine:
    """
    Drives offer/answer/candidate exchange against one peer connection.

    The machine never touches the signaling socket itself; outgoing messages
    go through the send_signal coroutine it is given.
    """

    def __init__(self, send_signal: Callable[[SignalMessage], Awaitable[None]],
                 peer_factory: Optional[Callable[[], Any]] = None,
                 ice_servers: Optional[list] = None,
                 channel_label: str = 'fileTransfer',
                 on_status: Optional[Callable[[SessionStatus], None]] = None,
                 on_channel: Optional[Callable[[Any], None]] = None,
                 on_error: Optional[Callable[[str], None]] = None):
        """
        Args:
            send_signal: Coroutine that delivers a message to the remote peer
            peer_factory: Creates the peer connection (default: aiortc)
            ice_servers: STUN/TURN urls for the default factory
            channel_label: Label of the data channel the initiator creates
            on_status: Called on every lifecycle status change
            on_channel: Called with each data channel created or received
            on_error: Called with a user-visible error string
        """
        self._send_signal = send_signal
        self._peer_factory = peer_factory or (lambda: create_peer_connection(ice_servers))
        self.channel_label = channel_label
        self.on_status = on_status
        self.on_channel = on_channel
        self.on_error = on_error

        self.candidates = CandidateQueue()
        self.status = SessionStatus.IDLE
        self.error: Optional[str] = None
        self.room: Optional[str] = None
        self.is_initiator = False
        self.channel = None

        self._pc = None
        self._tasks: Set = set()

    # === State ===

    @property
    def peer_connection(self):
        return self._pc

    @property
    def signaling_state(self) -> SignalingState:
        if self._pc is None:
            return SignalingState.CLOSED
        return SignalingState(self._pc.signalingState)

    @property
    def has_remote_description(self) -> bool:
        return self._pc is not None and self._pc.remoteDescription is not None

    def _set_status(self, status: SessionStatus):
        if status == self.status:
            return
        logger.info(f"Session status: {self.status.value} -> {status.value}")
        self.status = status
        if self.on_status:
            self.on_status(status)

    def _set_error(self, message: str):
        self.error = message
        if self.on_error:
            self.on_error(message)

    def fail(self, message: str):
        """Mark the context failed with a user-visible error."""
        self._set_error(message)
        self._set_status(SessionStatus.FAILED)

    def mark_disconnected(self):
        if self.status in ACTIVE_STATUSES:
            self._set_status(SessionStatus.DISCONNECTED)

    # === Lifecycle ===

    async def initialize(self, room: str, is_initiator: bool):
        """Create a fresh peer connection and move to connecting."""
        if self._pc is not None:
            await self.close()

        self.room = room
        self.is_initiator = is_initiator
        self.error = None
        self.channel = None
        self.candidates.reset()

        pc = self._peer_factory()
        self._pc = pc

        pc.on('connectionstatechange', lambda: self._on_connection_state(pc))
        pc.on('iceconnectionstatechange', lambda: self._on_ice_state(pc))
        pc.on('datachannel', lambda channel: self._on_remote_channel(pc, channel))
        pc.on('icecandidate', lambda candidate: self._on_local_candidate(pc, candidate))

        self._set_status(SessionStatus.CONNECTING)

    async def close(self, status: SessionStatus = SessionStatus.IDLE):
        """Close channel and peer connection, then settle on status."""
        pc, self._pc = self._pc, None
        channel, self.channel = self.channel, None

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

        if channel is not None and channel.readyState not in ('closing', 'closed'):
            try:
                channel.close()
            except Exception as e:
                logger.error(f"Error closing data channel: {e}")

        if pc is not None:
            try:
                await pc.close()
            except Exception as e:
                logger.error(f"Error closing peer connection: {e}")

        self.candidates.reset()
        if status == SessionStatus.IDLE:
            self.error = None
        self._set_status(status)

    # === Events ===

    async def handle(self, event: NegotiationEvent, payload: Any = None):
        """
        Run the transition for event in the current signaling state.

        Raises:
            InvalidTransitionError: No transition for (event, state)
            MalformedMessageError: Payload could not be parsed
            NegotiationError: The transport rejected the step
        """
        if self._pc is None:
            raise InvalidTransitionError(event.value, self.status.value)
        if event == NegotiationEvent.PEER_JOINED and not self.is_initiator:
            raise InvalidTransitionError(event.value, 'responder')

        state = self.signaling_state
        name = TRANSITIONS.get((event, state))
        if name is None:
            raise InvalidTransitionError(event.value, state.value)

        await getattr(self, name)(payload)

    async def add_remote_candidate(self, data: Any) -> bool:
        """
        Apply a remote candidate now, or queue it until a remote description
        exists.

        Returns:
            True if applied immediately
        """
        if self._pc is None:
            raise InvalidTransitionError('ice-candidate', self.status.value)

        candidate = candidate_from_message(data)
        if candidate is None:
            logger.debug("Remote end-of-candidates")
            return False

        if not self.has_remote_description:
            logger.info("Queuing ICE candidate until remote description is set")
            self.candidates.push(candidate)
            return False

        try:
            await self._pc.addIceCandidate(candidate)
        except Exception as e:
            logger.warning(f"Error adding ICE candidate: {e}")
            return False
        logger.debug("Added ICE candidate immediately")
        return True

    # === Transitions ===

    async def _send_offer(self, _payload: Any = None):
        pc = self._pc
        if self.channel is None:
            logger.info("Creating data channel as initiator")
            self._adopt_channel(pc.createDataChannel(self.channel_label))

        try:
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
        except Exception as e:
            logger.error(f"Error creating offer: {e}")
            self._set_error('Failed to send offer')
            raise NegotiationError('Failed to send offer') from e

        await self._send_signal(SignalMessage.offer(
            description_to_message(pc.localDescription), self.room
        ))
        logger.info("Sent offer")

    async def _accept_offer(self, sdp: Any):
        pc = self._pc
        description = description_from_message(sdp, 'offer')

        try:
            await pc.setRemoteDescription(description)
            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
        except Exception as e:
            logger.error(f"Error handling offer: {e}")
            self._set_error('Failed to handle offer')
            raise NegotiationError('Failed to handle offer') from e

        await self._send_signal(SignalMessage.answer(
            description_to_message(pc.localDescription), self.room
        ))
        logger.info("Sent answer")

        await self.candidates.flush(pc.addIceCandidate)

    async def _accept_answer(self, sdp: Any):
        pc = self._pc
        description = description_from_message(sdp, 'answer')

        try:
            await pc.setRemoteDescription(description)
        except Exception as e:
            logger.error(f"Error handling answer: {e}")
            self._set_error('Failed to handle answer')
            raise NegotiationError('Failed to handle answer') from e

        logger.info("Applied answer")
        await self.candidates.flush(pc.addIceCandidate)

    # === Transport callbacks ===

    def _adopt_channel(self, channel):
        self.channel = channel
        if self.on_channel:
            self.on_channel(channel)

    def _on_remote_channel(self, pc, channel):
        if pc is not self._pc:
            return
        logger.info(f"Data channel received: {channel.label}")
        self._adopt_channel(channel)

    def _on_connection_state(self, pc):
        if pc is not self._pc:
            return
        state = pc.connectionState
        logger.info(f"Connection state: {state}")

        if state == 'connected':
            self.error = None
            self._set_status(SessionStatus.CONNECTED)
        elif state == 'failed':
            self.fail('Connection failed')
        elif state in ('disconnected', 'closed'):
            if self.status != SessionStatus.FAILED:
                self._set_status(SessionStatus.DISCONNECTED)

    def _on_ice_state(self, pc):
        if pc is not self._pc:
            return
        state = pc.iceConnectionState
        logger.debug(f"ICE connection state: {state}")
        if state == 'failed':
            self._set_error('ICE connection failed')

    def _on_local_candidate(self, pc, candidate):
        if pc is not self._pc or candidate is None:
            return
        message = SignalMessage.ice_candidate(candidate_to_message(candidate), self.room)
        task = self._spawn(self._send_signal(message))
        task.add_done_callback(self._log_send_failure)

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    def _log_send_failure(task):
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Could not send ICE candidate: {task.exception()}")
