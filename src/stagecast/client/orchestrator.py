"""Participant-side coordination of the signaling connection and peer sessions.

A :class:`ConnectionOrchestrator` owns one signaling socket, the queue of
negotiation payloads produced while that socket is down, one
:class:`~stagecast.client.peer.PeerSession` per remote participant and the
Q&A workflow state. Everything that changes this state (socket frames,
socket closure, transport events, media acquisition results, reconnect
timers) is posted to a single inbox and handled by one dispatch loop, one
item at a time.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..signaling import envelope as env
from ..signaling.envelope import (
    KEEPALIVE_PING,
    KEEPALIVE_PONG,
    SESSION_CLOSED_TEXT,
    MessageType,
    ProtocolError,
    Role,
    SignalEnvelope,
    frame_type,
    keepalive_frame,
)
from .config import ClientSettings, get_client_settings
from .peer import (
    MediaProvider,
    MediaStream,
    PeerEvent,
    PeerEventKind,
    PeerSession,
    TransportFactory,
)
from .states import (
    CONNECTION_TRANSITIONS,
    QA_TRANSITIONS,
    ConnectionState,
    InvalidTransition,
    NotConnectedError,
    PeerRole,
    QAStatus,
    advance,
)


logger = logging.getLogger(__name__)


class SignalingSocket(Protocol):
    """The subset of a ``websockets`` client connection the orchestrator uses."""

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[SignalingSocket]]


@dataclass(frozen=True, slots=True)
class ParticipantContext:
    """Who this process is inside which broadcast.

    ``session_id`` is the host's identity; for the host it equals ``identity``.
    """

    identity: str
    role: Role
    session_id: str
    display_name: str | None = None

    @classmethod
    def host(cls, identity: str, display_name: str | None = None) -> "ParticipantContext":
        return cls(identity, Role.HOST, identity, display_name)

    @classmethod
    def viewer(
        cls, identity: str, host_identity: str, display_name: str | None = None
    ) -> "ParticipantContext":
        return cls(identity, Role.VIEWER, host_identity, display_name)

    @property
    def is_host(self) -> bool:
        return self.role is Role.HOST


@dataclass(frozen=True, slots=True)
class ChatEntry:
    sender: str
    text: str
    sent_by: str | None = None


# Inbox items -----------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class _SocketFrame:
    socket: SignalingSocket
    raw: str


@dataclass(frozen=True, slots=True)
class _SocketClosed:
    socket: SignalingSocket
    reason: str = ""


@dataclass(frozen=True, slots=True)
class _MediaResult:
    stream: MediaStream | None = None
    error: BaseException | None = field(default=None)


@dataclass(frozen=True, slots=True)
class _Reconnect:
    pass


async def _default_connector(url: str) -> SignalingSocket:
    return await websockets.connect(url)


def _log_notice(message: str) -> None:
    logger.info("notice: %s", message)


class ConnectionOrchestrator:
    """Client-side coordination for one participant."""

    def __init__(
        self,
        context: ParticipantContext,
        *,
        transport_factory: TransportFactory,
        media_provider: MediaProvider | None = None,
        settings: ClientSettings | None = None,
        connector: Connector | None = None,
        notify: Callable[[str], None] | None = None,
        on_stream: Callable[[str, Any], None] | None = None,
        on_session_closed: Callable[[], Any] | None = None,
        media_constraints: dict[str, Any] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.context = context
        self.settings = settings or get_client_settings()
        self.state = ConnectionState.DISCONNECTED
        self.qa_status = QAStatus.IDLE
        self.peers: dict[str, PeerSession] = {}
        self.known_peers: list[str] = []
        self.chat_log: list[ChatEntry] = []
        self.local_stream: MediaStream | None = None
        self.countdown_remaining: int | None = None

        # host bookkeeping
        self.qa_requests: list[str] = []
        self.active_qa: set[str] = set()
        self.muted_users: set[str] = set()

        self._transport_factory = transport_factory
        self._media = media_provider
        self._connector = connector or _default_connector
        self._notify = notify or _log_notice
        self._on_stream = on_stream
        self._on_session_closed = on_session_closed
        self._constraints = media_constraints or {"audio": True, "video": True}
        self._sleep = sleep

        self._inbox: asyncio.Queue[Any] = asyncio.Queue()
        self._pending: deque[SignalEnvelope] = deque()
        self._socket: SignalingSocket | None = None
        self._reader: asyncio.Task[None] | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._timers: set[asyncio.Task[None]] = set()
        self._reconnect_attempts = 0
        self._session_ended = False
        self._closed = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def identity(self) -> str:
        return self.context.identity

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def session_ended(self) -> bool:
        return self._session_ended

    @property
    def pending_signals(self) -> list[SignalEnvelope]:
        return list(self._pending)

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the dispatch loop, acquire host media and connect."""

        self._ensure_loop()
        if self.context.is_host and self.local_stream is None:
            await self._acquire_host_media()
        await self.connect()

    async def connect(self) -> bool:
        if self._closed or self._session_ended:
            return False
        if self.state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            return self.connected
        self._ensure_loop()
        self._set_state(ConnectionState.CONNECTING)
        try:
            socket = await self._connector(self.settings.service_url)
        except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
            logger.warning("Could not reach %s: %s", self.settings.service_url, exc)
            self._set_state(ConnectionState.ERROR)
            self._schedule_reconnect()
            return False

        if self._closed or self._session_ended:
            self._set_state(ConnectionState.DISCONNECTED)
            await self._close_quietly(socket)
            return False

        self._socket = socket
        self._set_state(ConnectionState.CONNECTED)
        self._reconnect_attempts = 0
        self._reader = asyncio.create_task(self._read_socket(socket))
        logger.info("Connected to %s as %s (%s)", self.settings.service_url, self.identity, self.context.role.value)

        await self._send(env.register(self.identity, self.context.role, self.context.session_id))
        await self._flush_pending()
        if self.connected:
            await self._send(env.peer_list([], sender=self.identity))
        if not self.context.is_host and self.context.session_id not in self.peers:
            self._open_session(self.context.session_id, PeerRole.INITIATOR)
        return self.connected

    async def retry(self) -> bool:
        """Manual reconnect; resets the backoff counter."""

        if self.state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            return self.connected
        self._cancel_reconnect()
        self._reconnect_attempts = 0
        return await self.connect()

    async def close(self) -> None:
        """Deliberate local shutdown; no automatic reconnection afterwards."""

        if self._closed:
            return
        self._closed = True
        self._cancel_reconnect()
        self._teardown_media()
        await self._close_socket()
        for task in list(self._timers):
            task.cancel()
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

    async def drain(self) -> None:
        """Wait until the inbox is empty and no timer is outstanding."""

        while True:
            await asyncio.sleep(0)
            await self._inbox.join()
            pending = [task for task in self._timers if not task.done()]
            if not pending:
                if self._inbox.empty():
                    return
                continue
            await asyncio.wait(pending)

    # ------------------------------------------------------------------
    # Outbound actions
    # ------------------------------------------------------------------

    async def send_signal(self, to: str, payload: Any) -> bool:
        """Send a negotiation payload now, or queue it until the next connect."""

        envelope = env.signal(to, self.identity, payload)
        if not self.connected or self._pending:
            self._pending.append(envelope)
            if self.connected:
                await self._flush_pending()
            return False
        if not await self._send(envelope):
            self._pending.appendleft(envelope)
            return False
        return True

    async def send_chat(self, text: str) -> None:
        await self._send_control(
            env.chat(
                self.identity,
                text,
                to=self.context.session_id,
                sent_by=self.context.display_name or self.identity,
            )
        )

    async def request_qa(self) -> None:
        self._require_connected()
        target = advance("qa", QA_TRANSITIONS, self.qa_status, QAStatus.REQUESTED)
        await self._send_control(
            env.addressed(MessageType.REQUEST, to=self.context.session_id, sender=self.identity)
        )
        self.qa_status = target
        logger.info("%s requested to join Q&A", self.identity)

    async def approve(self, viewer: str) -> None:
        await self._send_control(env.addressed(MessageType.APPROVE, to=viewer, sender=self.identity))
        self._forget_request(viewer)
        self.active_qa.add(viewer)

    async def deny(self, viewer: str) -> None:
        await self._send_control(env.addressed(MessageType.DENY, to=viewer, sender=self.identity))
        self._forget_request(viewer)

    async def mute(self, user: str) -> None:
        await self._send_control(env.mute(user, muted=True))
        self.muted_users.add(user)

    async def unmute(self, user: str) -> None:
        await self._send_control(env.mute(user, muted=False))
        self.muted_users.discard(user)

    async def end_session(self) -> None:
        """Announce the end of the broadcast to everyone, then shut down locally."""

        await self._send_control(
            env.chat(
                self.identity,
                SESSION_CLOSED_TEXT,
                to=self.context.session_id,
                sent_by=self.context.display_name or self.identity,
            )
        )
        await self._enter_session_closed()

    # ------------------------------------------------------------------
    # Dispatch loop
    # ------------------------------------------------------------------

    def _ensure_loop(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._dispatch_loop())

    def _post(self, item: Any) -> None:
        self._inbox.put_nowait(item)

    def _spawn(self, coro) -> "asyncio.Task[None]":
        task = asyncio.create_task(coro)
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)
        return task

    async def _dispatch_loop(self) -> None:
        while True:
            item = await self._inbox.get()
            try:
                await self._dispatch(item)
            except InvalidTransition as exc:
                logger.warning("Ignoring out-of-order event: %s", exc)
            except Exception:
                logger.exception("Failed to handle %r", item)
            finally:
                self._inbox.task_done()

    async def _dispatch(self, item: Any) -> None:
        if isinstance(item, _SocketFrame):
            if item.socket is self._socket:
                await self._handle_frame(item.raw)
        elif isinstance(item, PeerEvent):
            await self._handle_peer_event(item)
        elif isinstance(item, _MediaResult):
            await self._handle_media_result(item)
        elif isinstance(item, _SocketClosed):
            self._handle_socket_closed(item)
        elif isinstance(item, _Reconnect):
            if self.state in (ConnectionState.DISCONNECTED, ConnectionState.ERROR):
                await self.connect()

    # ------------------------------------------------------------------
    # Signaling socket
    # ------------------------------------------------------------------

    async def _read_socket(self, socket: SignalingSocket) -> None:
        reason = ""
        try:
            async for raw in socket:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                self._post(_SocketFrame(socket, raw))
        except ConnectionClosed as exc:
            reason = str(exc)
        except OSError as exc:
            reason = str(exc)
        finally:
            self._post(_SocketClosed(socket, reason))

    def _handle_socket_closed(self, item: _SocketClosed) -> None:
        if item.socket is not self._socket:
            return
        self._socket = None
        self._reader = None
        self._set_state(ConnectionState.DISCONNECTED)
        if self._closed or self._session_ended:
            return
        logger.warning("Signaling connection lost%s", f": {item.reason}" if item.reason else "")
        self._schedule_reconnect()

    async def _send(self, envelope: SignalEnvelope) -> bool:
        return await self._send_raw(envelope.to_text())

    async def _send_raw(self, text: str) -> bool:
        socket = self._socket
        if socket is None:
            return False
        try:
            await socket.send(text)
        except (ConnectionClosed, OSError, RuntimeError) as exc:
            logger.info("Send on signaling socket failed: %s", exc)
            return False
        return True

    async def _send_control(self, envelope: SignalEnvelope) -> None:
        self._require_connected()
        if not await self._send(envelope):
            raise NotConnectedError(f"Could not send {envelope.type.value}: signaling socket is closed")

    def _require_connected(self) -> None:
        if not self.connected:
            raise NotConnectedError(f"Signaling connection is {self.state.value}")

    async def _flush_pending(self) -> None:
        while self._pending and self.connected:
            envelope = self._pending.popleft()
            if not await self._send(envelope):
                self._pending.appendleft(envelope)
                break

    async def _close_socket(self) -> None:
        socket, self._socket = self._socket, None
        reader, self._reader = self._reader, None
        if self.state is ConnectionState.CONNECTED:
            self._set_state(ConnectionState.DISCONNECTED)
        if socket is not None:
            await self._close_quietly(socket)
        if reader is not None and not reader.done():
            reader.cancel()

    @staticmethod
    async def _close_quietly(socket: SignalingSocket) -> None:
        try:
            await socket.close()
        except (ConnectionClosed, OSError, RuntimeError) as exc:
            logger.debug("Closing signaling socket failed: %s", exc)

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        if self._closed or self._session_ended:
            return
        if self._reconnect_attempts >= self.settings.max_reconnect_attempts:
            self._set_state(ConnectionState.FAILED)
            logger.error(
                "Giving up on %s after %d reconnect attempts",
                self.settings.service_url,
                self._reconnect_attempts,
            )
            self._notify("Connection to the session failed. Use retry to try again.")
            return
        delay = self.settings.reconnect_base_delay_seconds * (2 ** self._reconnect_attempts)
        self._reconnect_attempts += 1
        logger.info(
            "Reconnecting in %.1fs (attempt %d/%d)",
            delay,
            self._reconnect_attempts,
            self.settings.max_reconnect_attempts,
        )
        self._cancel_reconnect()
        self._reconnect_task = self._spawn(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await self._sleep(delay)
        self._post(_Reconnect())

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _set_state(self, target: ConnectionState) -> None:
        if target is self.state:
            return
        previous = self.state
        self.state = advance("connection", CONNECTION_TRANSITIONS, self.state, target)
        logger.debug("Connection state %s -> %s", previous.value, target.value)

    # ------------------------------------------------------------------
    # Inbound envelopes
    # ------------------------------------------------------------------

    async def _handle_frame(self, raw: str) -> None:
        kind = frame_type(raw)
        if kind == KEEPALIVE_PING:
            await self._send_raw(keepalive_frame(KEEPALIVE_PONG))
            return
        if kind == KEEPALIVE_PONG:
            return
        try:
            envelope = SignalEnvelope.from_text(raw)
        except ProtocolError as exc:
            logger.warning("Dropping frame from service (%s): %s", exc.reason, exc.detail)
            return

        handler = {
            MessageType.SIGNAL: self._on_signal,
            MessageType.CHAT: self._on_chat,
            MessageType.REQUEST: self._on_request,
            MessageType.APPROVE: self._on_approve,
            MessageType.DENY: self._on_deny,
            MessageType.QA_STREAM: self._on_qa_stream,
            MessageType.PEER_LIST: self._on_peer_list,
        }.get(envelope.type)
        if handler is None:
            logger.debug("Ignoring %s envelope", envelope.type.value)
            return
        await handler(envelope)

    async def _on_signal(self, envelope: SignalEnvelope) -> None:
        fields = envelope.fields
        if fields.to != self.identity:
            return
        remote = fields.sender
        session = self.peers.get(remote)
        if session is None:
            if self.local_stream is None:
                logger.debug("Dropping signal from %s: no local media to answer with", remote)
                return
            session = self._open_session(remote, PeerRole.RESPONDER)
        session.feed(fields.signal)

    async def _on_chat(self, envelope: SignalEnvelope) -> None:
        fields = envelope.fields
        self.chat_log.append(ChatEntry(fields.sender, fields.text, fields.sent_by))
        # the host only ends its broadcast through end_session()
        if fields.text == SESSION_CLOSED_TEXT and not self.context.is_host:
            await self._enter_session_closed()

    async def _on_request(self, envelope: SignalEnvelope) -> None:
        fields = envelope.fields
        if fields.to != self.identity:
            return
        if fields.sender not in self.qa_requests:
            self.qa_requests.append(fields.sender)
        self._notify(f"{fields.sender} asked to join the Q&A")

    async def _on_approve(self, envelope: SignalEnvelope) -> None:
        if envelope.fields.to != self.identity:
            return
        self.qa_status = advance("qa", QA_TRANSITIONS, self.qa_status, QAStatus.APPROVED)
        logger.info("Q&A request approved; acquiring local media")
        self._spawn(self._acquire_media())

    async def _on_deny(self, envelope: SignalEnvelope) -> None:
        if envelope.fields.to != self.identity:
            return
        self.qa_status = advance("qa", QA_TRANSITIONS, self.qa_status, QAStatus.IDLE)
        self._notify("Your Q&A request was declined")

    async def _on_qa_stream(self, envelope: SignalEnvelope) -> None:
        remote = envelope.fields.sender
        if remote == self.identity:
            return
        if remote not in self.known_peers:
            self.known_peers.append(remote)
        if self.context.is_host:
            self.active_qa.add(remote)
            self._forget_request(remote)
        if remote not in self.peers:
            self._open_session(remote, PeerRole.INITIATOR)

    async def _on_peer_list(self, envelope: SignalEnvelope) -> None:
        self.known_peers = [peer for peer in envelope.fields.peers if peer != self.identity]

    def _forget_request(self, viewer: str) -> None:
        if viewer in self.qa_requests:
            self.qa_requests.remove(viewer)

    # ------------------------------------------------------------------
    # Peer sessions
    # ------------------------------------------------------------------

    def _open_session(self, remote: str, role: PeerRole) -> PeerSession:
        session = PeerSession(
            remote,
            role,
            factory=self._transport_factory,
            post=self._post,
            spawn=self._spawn,
            ice_servers=self.settings.ice_servers,
            retry_limit=self.settings.peer_retry_limit,
            retry_delay=self.settings.peer_retry_delay_seconds,
            sleep=self._sleep,
        )
        self.peers[remote] = session
        if self.local_stream is not None:
            session.attach(self.local_stream)
        logger.info("Opened %s session with %s", role.value, remote)
        return session

    async def _handle_peer_event(self, event: PeerEvent) -> None:
        session = self.peers.get(event.remote)
        if session is None or not session.accepts(event):
            return
        if event.kind is PeerEventKind.SIGNAL:
            await self.send_signal(event.remote, event.data)
        elif event.kind is PeerEventKind.CONNECT:
            session.mark_connected()
            logger.info("Media connected with %s", event.remote)
        elif event.kind is PeerEventKind.STREAM:
            session.remote_stream = event.data
            if self._on_stream is not None:
                self._on_stream(event.remote, event.data)
        elif event.kind is PeerEventKind.ERROR:
            if not session.handle_error(event.data):
                self.peers.pop(event.remote, None)
        elif event.kind is PeerEventKind.CLOSE:
            session.close()
            self.peers.pop(event.remote, None)
        elif event.kind is PeerEventKind.RETRY:
            session.restart()

    # ------------------------------------------------------------------
    # Local media
    # ------------------------------------------------------------------

    async def _acquire_host_media(self) -> None:
        if self._media is None:
            logger.warning("No media provider configured; broadcasting without local media")
            return
        try:
            self.local_stream = await self._media.acquire(self._constraints)
        except Exception as exc:
            logger.warning("Could not acquire local media: %s", exc)
            self._notify("Could not access camera or microphone")

    async def _acquire_media(self) -> None:
        if self._media is None:
            self._post(_MediaResult(error=RuntimeError("no media provider configured")))
            return
        try:
            stream = await self._media.acquire(self._constraints)
        except Exception as exc:
            self._post(_MediaResult(error=exc))
            return
        self._post(_MediaResult(stream=stream))

    async def _handle_media_result(self, result: _MediaResult) -> None:
        if self._session_ended or self._closed or self.qa_status is not QAStatus.APPROVED:
            if result.stream is not None:
                result.stream.stop()
            return
        if result.stream is None:
            logger.warning("Could not acquire media for Q&A: %s", result.error)
            self.qa_status = advance("qa", QA_TRANSITIONS, self.qa_status, QAStatus.IDLE)
            self._notify("Could not access camera or microphone; Q&A cancelled")
            return
        self.local_stream = result.stream
        for session in self.peers.values():
            session.attach(result.stream)
        announcement = env.qa_stream(self.identity)
        if self.connected and not self._pending:
            if await self._send(announcement):
                return
        self._pending.append(announcement)

    def _teardown_media(self) -> None:
        for session in list(self.peers.values()):
            session.close()
        self.peers.clear()
        stream, self.local_stream = self.local_stream, None
        if stream is not None:
            stream.stop()

    # ------------------------------------------------------------------
    # Session end
    # ------------------------------------------------------------------

    async def _enter_session_closed(self) -> None:
        if self._session_ended:
            return
        self._session_ended = True
        logger.info("Session %s closed", self.context.session_id)
        self._cancel_reconnect()
        self._teardown_media()
        self.qa_status = advance("qa", QA_TRANSITIONS, self.qa_status, QAStatus.ENDED)
        await self._close_socket()
        self._notify("The session has ended")
        self.countdown_remaining = self.settings.session_end_countdown_ticks
        self._spawn(self._countdown())

    async def _countdown(self) -> None:
        while self.countdown_remaining:
            await self._sleep(self.settings.countdown_tick_seconds)
            self.countdown_remaining -= 1
        if self._on_session_closed is not None:
            result = self._on_session_closed()
            if asyncio.iscoroutine(result):
                await result


__all__ = ["ChatEntry", "ConnectionOrchestrator", "ParticipantContext"]
