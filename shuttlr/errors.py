"""
Error Types

Every failure that leaves a component is one of these. Lower-level errors
(websockets, aiortc, the filesystem) are caught at the component boundary and
re-raised as the matching category, so callers only ever handle ShuttlrError.

Categories:
- SignalingError: malformed or out-of-state signaling, room full (non-fatal)
- NegotiationError: the peer connection could not be negotiated
- TransferError: one file transfer failed (fatal to that transfer only)
- FrameError: a data-channel control frame could not be parsed
- ConfigError: invalid configuration values
"""

from typing import Optional


class ShuttlrError(Exception):
    """Base class for all shuttlr errors."""

    default_message = "Unexpected error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


# === Signaling ===

class SignalingError(ShuttlrError):
    """The signaling socket failed or delivered something unusable."""
    default_message = "Signaling error"


class MalformedMessageError(SignalingError):
    """A signaling message is not valid JSON or misses required fields."""
    default_message = "Malformed signaling message"


class RoomFullError(SignalingError):
    """The relay refused the join because the room already has two peers."""
    default_message = "Room is full"


# === Negotiation ===

class NegotiationError(ShuttlrError):
    """The offer/answer exchange could not be completed."""
    default_message = "Negotiation failed"


class InvalidTransitionError(NegotiationError):
    """An event arrived in a signaling state that does not accept it."""

    def __init__(self, event: str, state: str):
        self.event = event
        self.state = state
        super().__init__(f"Cannot handle {event} in signaling state {state}")


# === Transfers ===

class TransferError(ShuttlrError):
    """A single file transfer failed."""
    default_message = "Transfer failed"


class ChannelNotOpenError(TransferError):
    default_message = "Data channel is not open or ready"


class ChannelClosedError(TransferError):
    default_message = "Data channel closed during transfer"


class BufferTimeoutError(TransferError):
    default_message = "Timed out waiting for the data channel buffer to drain"


class ReadTimeoutError(TransferError):
    default_message = "Timed out reading file chunk"


class SendFailedError(TransferError):
    default_message = "Failed to send on the data channel"


class DuplicateTransferError(TransferError):
    default_message = "Transfer identifier already used"


# === Frames / config ===

class FrameError(ShuttlrError):
    """A data-channel control frame is not valid JSON or has an unknown shape."""
    default_message = "Malformed control frame"


class ConfigError(ShuttlrError):
    default_message = "Invalid configuration"
