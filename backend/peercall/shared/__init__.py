"""Shared DTOs and type definitions used across services.

Only lightweight, common data models should live here. Do not place
service-specific logic or heavy dependencies (e.g., aiortc, numpy)
in this package.
"""

from .dto import (
    SignalEnvelope,
    SessionDescription,
    IceCandidatePayload,
    UserEntry,
    RegisterPayload,
    CallOffer,
    CallAnswer,
    IceCandidateMessage,
    PeerAddress,
    CallFailed,
    UserDisconnected,
)

__all__ = [
    "SignalEnvelope",
    "SessionDescription",
    "IceCandidatePayload",
    "UserEntry",
    "RegisterPayload",
    "CallOffer",
    "CallAnswer",
    "IceCandidateMessage",
    "PeerAddress",
    "CallFailed",
    "UserDisconnected",
]
