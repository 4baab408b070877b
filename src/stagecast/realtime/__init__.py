"""Server side of the signaling channel: the per-connection coordination loop."""

from .connection import WebSocketConnection, safe_send_text  # noqa: F401
from .service import (  # noqa: F401
    SessionCoordinationService,
    get_signaling_service,
    shutdown_signaling,
)

__all__ = [
    "SessionCoordinationService",
    "WebSocketConnection",
    "get_signaling_service",
    "safe_send_text",
    "shutdown_signaling",
]
