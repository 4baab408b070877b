"""Participant side: connection orchestration, peer sessions and Q&A workflow.

The aiortc adapters live in :mod:`stagecast.client.media` and are imported
explicitly by callers that want real media.
"""

from .config import ClientSettings, IceServer, get_client_settings  # noqa: F401
from .orchestrator import ChatEntry, ConnectionOrchestrator, ParticipantContext  # noqa: F401
from .peer import MediaProvider, PeerEvent, PeerEventKind, PeerSession, PeerTransport  # noqa: F401
from .states import (  # noqa: F401
    ConnectionState,
    InvalidTransition,
    NotConnectedError,
    PeerRole,
    PeerState,
    QAStatus,
)

__all__ = [
    "ChatEntry",
    "ClientSettings",
    "ConnectionOrchestrator",
    "ConnectionState",
    "IceServer",
    "InvalidTransition",
    "MediaProvider",
    "NotConnectedError",
    "ParticipantContext",
    "PeerEvent",
    "PeerEventKind",
    "PeerRole",
    "PeerSession",
    "PeerState",
    "PeerTransport",
    "QAStatus",
    "get_client_settings",
]
