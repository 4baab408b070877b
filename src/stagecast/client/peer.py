"""One media negotiation with one remote participant."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine, Protocol, Sequence

from .config import IceServer
from .states import PEER_TRANSITIONS, PeerRole, PeerState, advance


logger = logging.getLogger(__name__)


class PeerEventKind(str, Enum):
    SIGNAL = "signal"
    CONNECT = "connect"
    STREAM = "stream"
    ERROR = "error"
    CLOSE = "close"
    # posted by the session itself once the retry delay has elapsed
    RETRY = "retry"


@dataclass(frozen=True, slots=True)
class PeerEvent:
    remote: str
    kind: PeerEventKind
    data: Any = None
    generation: int = 0


class MediaStream(Protocol):
    def stop(self) -> None: ...


class MediaProvider(Protocol):
    async def acquire(self, constraints: dict[str, Any] | None = None) -> MediaStream: ...


class PeerTransport(Protocol):
    """The opaque negotiation engine wrapped by a :class:`PeerSession`."""

    def signal(self, payload: Any) -> None: ...

    def add_stream(self, stream: MediaStream) -> None: ...

    def destroy(self) -> None: ...


TransportSink = Callable[[str, Any], None]
TransportFactory = Callable[[PeerRole, Sequence[IceServer], TransportSink], PeerTransport]
Spawn = Callable[[Coroutine[Any, Any, None]], "asyncio.Task[None]"]


class PeerSession:
    """Own a transport toward ``remote`` and recreate it after negotiation errors.

    Transport events are tagged with a generation number and handed to
    ``post``; events from a transport that has since been replaced are
    recognised by :meth:`accepts` and ignored by the caller.
    """

    def __init__(
        self,
        remote: str,
        role: PeerRole,
        *,
        factory: TransportFactory,
        post: Callable[[PeerEvent], None],
        spawn: Spawn,
        ice_servers: Sequence[IceServer] = (),
        retry_limit: int = 3,
        retry_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.remote = remote
        self.role = role
        self.state = PeerState.NEGOTIATING
        self.local_stream: MediaStream | None = None
        self.remote_stream: Any = None
        self.attempts = 0
        self.generation = 0
        self._factory = factory
        self._post = post
        self._spawn = spawn
        self._ice_servers = list(ice_servers)
        self._retry_limit = retry_limit
        self._retry_delay = retry_delay
        self._sleep = sleep
        self._retry_task: asyncio.Task[None] | None = None
        self._transport: PeerTransport | None = self._create_transport()

    @property
    def closed(self) -> bool:
        return self.state is PeerState.CLOSED

    @property
    def transport(self) -> PeerTransport | None:
        return self._transport

    def _create_transport(self) -> PeerTransport:
        self.generation += 1
        generation = self.generation

        def sink(kind: str, data: Any = None) -> None:
            self._post(PeerEvent(self.remote, PeerEventKind(kind), data, generation))

        transport = self._factory(self.role, self._ice_servers, sink)
        if self.local_stream is not None:
            transport.add_stream(self.local_stream)
        return transport

    def _set_state(self, target: PeerState) -> None:
        if target is not self.state:
            self.state = advance("peer", PEER_TRANSITIONS, self.state, target)

    def accepts(self, event: PeerEvent) -> bool:
        return not self.closed and event.generation == self.generation

    def feed(self, payload: Any) -> None:
        if self._transport is None:
            logger.debug("Dropping signal for %s: no live transport", self.remote)
            return
        self._transport.signal(payload)

    def attach(self, stream: MediaStream) -> None:
        self.local_stream = stream
        if self._transport is not None:
            self._transport.add_stream(stream)

    def mark_connected(self) -> None:
        self._set_state(PeerState.CONNECTED)
        self.attempts = 0

    def handle_error(self, error: Any) -> bool:
        """Destroy the broken transport; return ``True`` if a retry was scheduled."""

        self._destroy_transport()
        if self.role is PeerRole.RESPONDER:
            logger.info("Responder session with %s failed (%s); closing", self.remote, error)
            self.close()
            return False
        if self.attempts >= self._retry_limit:
            logger.warning(
                "Giving up on %s after %d retries: %s", self.remote, self.attempts, error
            )
            self._set_state(PeerState.FAILED)
            self.close()
            return False
        self.attempts += 1
        self._set_state(PeerState.NEGOTIATING)
        logger.info(
            "Negotiation with %s failed (%s); retry %d/%d in %.1fs",
            self.remote,
            error,
            self.attempts,
            self._retry_limit,
            self._retry_delay,
        )
        self._retry_task = self._spawn(self._retry_later(self.generation))
        return True

    async def _retry_later(self, generation: int) -> None:
        await self._sleep(self._retry_delay)
        self._post(PeerEvent(self.remote, PeerEventKind.RETRY, None, generation))

    def restart(self) -> None:
        if self.closed:
            return
        self._retry_task = None
        self._transport = self._create_transport()

    def _destroy_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            transport.destroy()

    def close(self) -> None:
        if self.closed:
            return
        if self._retry_task is not None and not self._retry_task.done():
            self._retry_task.cancel()
        self._retry_task = None
        self._destroy_transport()
        self._set_state(PeerState.CLOSED)
        self.remote_stream = None

    def __repr__(self) -> str:
        return f"<PeerSession {self.remote} {self.role.value} {self.state.value}>"


__all__ = [
    "MediaProvider",
    "MediaStream",
    "PeerEvent",
    "PeerEventKind",
    "PeerSession",
    "PeerTransport",
    "TransportFactory",
    "TransportSink",
]
