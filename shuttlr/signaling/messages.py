"""
Signaling Messages

Design Decision: Message Format
===============================

The relay speaks the same JSON the browser client speaks, one object per
websocket text frame, discriminated by a "type" field:

    {"type": "join", "room": "...", "user": "...", "isCaller": true}
    {"type": "offer", "sdp": {"type": "offer", "sdp": "v=0..."}, "room": "..."}
    {"type": "answer", "sdp": {"type": "answer", "sdp": "v=0..."}, "room": "..."}
    {"type": "ice-candidate", "candidate": {...}, "room": "..."}
    {"type": "user-joined", "user": "..."}      (server -> client)
    {"type": "user-left"}                        (server -> client)
    {"type": "room-full"}                        (server -> client)

Extra fields are preserved so the relay can forward messages verbatim.
"""

import json
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..errors import MalformedMessageError


class SignalType(Enum):
    """Signaling message types."""
    # Client -> server
    JOIN = "join"

    # Relayed between peers
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"

    # Server -> client
    USER_JOINED = "user-joined"
    USER_LEFT = "user-left"
    ROOM_FULL = "room-full"


# Fields each message type cannot do without
REQUIRED_FIELDS = {
    SignalType.JOIN: ('room', 'user'),
    SignalType.OFFER: ('sdp',),
    SignalType.ANSWER: ('sdp',),
    SignalType.ICE_CANDIDATE: ('candidate',),
    SignalType.USER_JOINED: ('user',),
    SignalType.USER_LEFT: (),
    SignalType.ROOM_FULL: (),
}


@dataclass
class SignalMessage:
    """
    A signaling message.

    Every message contains:
    - type: What kind of message
    - payload: Type-specific fields (everything except "type")
    """
    type: SignalType
    payload: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type.value, **self.payload}

    def to_json(self) -> str:
        """Serialize message for transmission."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Any) -> 'SignalMessage':
        if not isinstance(data, dict):
            raise MalformedMessageError("Signaling message is not a JSON object")

        try:
            msg_type = SignalType(data.get('type'))
        except ValueError:
            raise MalformedMessageError(f"Unknown signaling message type: {data.get('type')!r}")

        payload = {k: v for k, v in data.items() if k != 'type'}
        for name in REQUIRED_FIELDS[msg_type]:
            if payload.get(name) in (None, ''):
                raise MalformedMessageError(
                    f"'{msg_type.value}' message is missing '{name}'"
                )

        return cls(type=msg_type, payload=payload)

    @classmethod
    def from_json(cls, raw: Any) -> 'SignalMessage':
        """Deserialize a websocket frame."""
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = raw.decode('utf-8')
            except UnicodeDecodeError:
                raise MalformedMessageError("Signaling frame is not UTF-8")
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise MalformedMessageError(f"Signaling frame is not JSON: {e}")
        return cls.from_dict(data)

    # === Constructors ===

    @classmethod
    def join(cls, room: str, user: str, is_caller: bool) -> 'SignalMessage':
        return cls(SignalType.JOIN, {'room': room, 'user': user, 'isCaller': is_caller})

    @classmethod
    def offer(cls, sdp: Dict[str, str], room: str) -> 'SignalMessage':
        return cls(SignalType.OFFER, {'sdp': sdp, 'room': room})

    @classmethod
    def answer(cls, sdp: Dict[str, str], room: str) -> 'SignalMessage':
        return cls(SignalType.ANSWER, {'sdp': sdp, 'room': room})

    @classmethod
    def ice_candidate(cls, candidate: Dict[str, Any], room: str) -> 'SignalMessage':
        return cls(SignalType.ICE_CANDIDATE, {'candidate': candidate, 'room': room})

    @classmethod
    def user_joined(cls, user: str) -> 'SignalMessage':
        return cls(SignalType.USER_JOINED, {'user': user})

    @classmethod
    def user_left(cls, user: Optional[str] = None) -> 'SignalMessage':
        return cls(SignalType.USER_LEFT, {'user': user} if user else {})

    @classmethod
    def room_full(cls) -> 'SignalMessage':
        return cls(SignalType.ROOM_FULL)
