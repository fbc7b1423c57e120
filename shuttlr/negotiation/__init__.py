"""
Negotiation Module - Offer/Answer/Candidate State Machine

Establishes the direct peer connection and its data channel.
"""

from .candidates import CandidateQueue
from .machine import (
    NegotiationEvent, NegotiationStateMachine, SessionStatus, SignalingState
)

__all__ = [
    'CandidateQueue',
    'NegotiationEvent',
    'NegotiationStateMachine',
    'SessionStatus',
    'SignalingState',
]
