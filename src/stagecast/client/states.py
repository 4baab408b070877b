"""Client-side state machines and the transitions each one allows."""

from __future__ import annotations

from enum import Enum
from typing import Mapping, TypeVar


class InvalidTransition(RuntimeError):
    """Raised when a state machine is asked for an edge it does not have."""

    def __init__(self, machine: str, current: Enum, target: Enum) -> None:
        super().__init__(f"{machine}: cannot move from {current.value} to {target.value}")
        self.machine = machine
        self.current = current
        self.target = target


class NotConnectedError(RuntimeError):
    """Raised when a control action is attempted without a live signaling connection."""


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    FAILED = "failed"


class QAStatus(str, Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    APPROVED = "approved"
    ENDED = "ended"


class PeerState(str, Enum):
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


class PeerRole(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


CONNECTION_TRANSITIONS: Mapping[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING, ConnectionState.FAILED}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED, ConnectionState.ERROR}
    ),
    ConnectionState.CONNECTED: frozenset({ConnectionState.DISCONNECTED, ConnectionState.ERROR}),
    ConnectionState.ERROR: frozenset(
        {ConnectionState.CONNECTING, ConnectionState.FAILED, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.FAILED: frozenset({ConnectionState.CONNECTING}),
}

# ``ended`` is reachable from every state and has no way out.
QA_TRANSITIONS: Mapping[QAStatus, frozenset[QAStatus]] = {
    QAStatus.IDLE: frozenset({QAStatus.REQUESTED, QAStatus.ENDED}),
    QAStatus.REQUESTED: frozenset({QAStatus.APPROVED, QAStatus.IDLE, QAStatus.ENDED}),
    QAStatus.APPROVED: frozenset({QAStatus.IDLE, QAStatus.ENDED}),
    QAStatus.ENDED: frozenset(),
}

PEER_TRANSITIONS: Mapping[PeerState, frozenset[PeerState]] = {
    PeerState.NEGOTIATING: frozenset({PeerState.CONNECTED, PeerState.FAILED, PeerState.CLOSED}),
    # an initiator that loses its transport renegotiates from scratch
    PeerState.CONNECTED: frozenset({PeerState.NEGOTIATING, PeerState.FAILED, PeerState.CLOSED}),
    PeerState.FAILED: frozenset({PeerState.CLOSED}),
    PeerState.CLOSED: frozenset(),
}


S = TypeVar("S", bound=Enum)


def advance(machine: str, table: Mapping[S, frozenset[S]], current: S, target: S) -> S:
    """Return *target* if ``current -> target`` is in *table*, else raise."""

    if target not in table.get(current, frozenset()):
        raise InvalidTransition(machine, current, target)
    return target


__all__ = [
    "CONNECTION_TRANSITIONS",
    "ConnectionState",
    "InvalidTransition",
    "NotConnectedError",
    "PEER_TRANSITIONS",
    "PeerRole",
    "PeerState",
    "QAStatus",
    "QA_TRANSITIONS",
    "advance",
]
