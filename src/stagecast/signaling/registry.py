"""In-memory table of registered participants."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Protocol

from .envelope import Role


logger = logging.getLogger(__name__)


class Connection(Protocol):
    """Server side of one participant's signaling socket."""

    @property
    def is_open(self) -> bool: ...

    async def send_text(self, data: str) -> bool: ...

    async def close(self) -> None: ...


@dataclass
class Participant:
    identity: str
    role: Role
    session_id: str
    connection: Connection
    muted: bool = False

    def to_public(self) -> dict[str, Any]:
        return {
            "userId": self.identity,
            "role": self.role.value,
            "streamId": self.session_id,
            "muted": self.muted,
        }


class ParticipantRegistry:
    """Map participant identity to connection, role, session and mute state.

    The registry is the only shared mutable structure of the coordination
    service; every mutation goes through ``self._lock``. Reads used for
    fan-out return a snapshot so sends happen outside the lock.
    """

    def __init__(self) -> None:
        # dicts keep insertion order, which fixes the broadcast send order
        self._participants: Dict[str, Participant] = {}
        self._lock = asyncio.Lock()

    async def register(
        self,
        identity: str,
        role: Role,
        session_id: str,
        connection: Connection,
    ) -> Participant:
        async with self._lock:
            previous = self._participants.pop(identity, None)
            participant = Participant(
                identity=identity,
                role=role,
                session_id=session_id,
                connection=connection,
            )
            self._participants[identity] = participant
        if previous is not None and previous.connection is not connection:
            logger.info("Participant %s re-registered from a new connection", identity)
            await _close_quietly(previous.connection)
        return participant

    async def lookup(self, identity: str) -> Participant | None:
        async with self._lock:
            return self._participants.get(identity)

    async def remove(self, identity: str, *, connection: Connection | None = None) -> Participant | None:
        async with self._lock:
            participant = self._participants.get(identity)
            if participant is None:
                return None
            if connection is not None and participant.connection is not connection:
                # A newer registration owns this identity now.
                return None
            del self._participants[identity]
        await _close_quietly(participant.connection)
        return participant

    async def set_muted(self, identity: str, muted: bool) -> bool:
        async with self._lock:
            participant = self._participants.get(identity)
            if participant is None:
                return False
            participant.muted = muted
            return True

    async def snapshot(self) -> list[Participant]:
        async with self._lock:
            return list(self._participants.values())

    async def for_each(self, fn: Callable[[Participant], Awaitable[None] | None]) -> None:
        for participant in await self.snapshot():
            result = fn(participant)
            if asyncio.iscoroutine(result):
                await result

    async def count(self) -> int:
        async with self._lock:
            return len(self._participants)

    async def clear(self) -> None:
        async with self._lock:
            participants = list(self._participants.values())
            self._participants.clear()
        for participant in participants:
            await _close_quietly(participant.connection)


async def _close_quietly(connection: Connection) -> None:
    if not connection.is_open:
        return
    try:
        await connection.close()
    except (RuntimeError, OSError) as exc:
        logger.debug("Failed to close participant connection: %s", exc)


__all__ = ["Connection", "Participant", "ParticipantRegistry"]
