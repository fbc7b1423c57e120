"""
Signaling Module - Room Join and Negotiation Message Exchange

JSON messages over a websocket to the signaling relay.
"""

from .messages import SignalMessage, SignalType
from .client import SignalingClient

__all__ = [
    'SignalMessage',
    'SignalType',
    'SignalingClient',
]
