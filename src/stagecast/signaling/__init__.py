"""Server-side participant registry, envelope codec and routing rules."""

from .envelope import MessageType, ProtocolError, Role, SignalEnvelope  # noqa: F401
from .registry import Connection, Participant, ParticipantRegistry  # noqa: F401
from .router import Delivery, MessageRouter, RouteResult  # noqa: F401

__all__ = [
    "Connection",
    "Delivery",
    "MessageRouter",
    "MessageType",
    "Participant",
    "ParticipantRegistry",
    "ProtocolError",
    "Role",
    "RouteResult",
    "SignalEnvelope",
]
