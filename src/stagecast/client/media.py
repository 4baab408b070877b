"""aiortc implementations of the peer transport and media capture contracts."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.sdp import candidate_from_sdp

from .config import IceServer
from .peer import TransportSink
from .states import PeerRole


logger = logging.getLogger(__name__)

# Keeps fire-and-forget close() tasks alive until they finish.
_background: set[asyncio.Task[Any]] = set()


def _keep(task: asyncio.Task[Any]) -> asyncio.Task[Any]:
    _background.add(task)
    task.add_done_callback(_background.discard)
    return task


def rtc_configuration(ice_servers: Sequence[IceServer]) -> RTCConfiguration:
    return RTCConfiguration(
        iceServers=[
            RTCIceServer(urls=server.urls, username=server.username, credential=server.credential)
            for server in ice_servers
            if server.urls
        ]
    )


@dataclass
class CapturedStream:
    """Local capture handed out by :class:`MediaPlayerProvider`."""

    audio: MediaStreamTrack | None = None
    video: MediaStreamTrack | None = None
    player: Any = field(default=None, repr=False)

    @property
    def tracks(self) -> list[MediaStreamTrack]:
        return [track for track in (self.audio, self.video) if track is not None]

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()


class MediaPlayerProvider:
    """Capture local media through ``aiortc.contrib.media.MediaPlayer``.

    ``source`` is anything ffmpeg can open: a device such as ``/dev/video0``
    with ``format="v4l2"``, a file, or a network stream.
    """

    def __init__(
        self,
        source: str,
        *,
        format: str | None = None,
        options: dict[str, str] | None = None,
    ) -> None:
        self.source = source
        self.format = format
        self.options = options or {}

    async def acquire(self, constraints: dict[str, Any] | None = None) -> CapturedStream:
        constraints = constraints or {"audio": True, "video": True}
        # opening a capture device blocks inside ffmpeg
        player = await asyncio.to_thread(
            MediaPlayer, self.source, format=self.format, options=self.options
        )
        stream = CapturedStream(
            audio=player.audio if constraints.get("audio", True) else None,
            video=player.video if constraints.get("video", True) else None,
            player=player,
        )
        if not stream.tracks:
            raise RuntimeError(f"{self.source} provides none of the requested tracks")
        logger.info("Acquired local media from %s (%d track(s))", self.source, len(stream.tracks))
        return stream


class AiortcPeerTransport:
    """A ``PeerTransport`` backed by an ``RTCPeerConnection``.

    Negotiation payloads are ``{"type": "offer"|"answer", "sdp": ...}`` or
    ``{"candidate": {...}}``. aiortc gathers candidates before the local
    description is produced, so outbound payloads are always full
    descriptions; inbound trickled candidates are still accepted.
    """

    def __init__(self, role: PeerRole, ice_servers: Sequence[IceServer], sink: TransportSink) -> None:
        self.role = role
        self._sink = sink
        self._pc = RTCPeerConnection(configuration=rtc_configuration(ice_servers))
        # inbound payloads must be applied in arrival order
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[None]] = set()
        self._destroyed = False

        @self._pc.on("connectionstatechange")
        async def on_connection_state_change() -> None:
            state = self._pc.connectionState
            logger.debug("Peer connection state is %s", state)
            if self._destroyed:
                return
            if state == "connected":
                self._sink("connect", None)
            elif state == "failed":
                self._sink("error", "connection failed")
            elif state == "closed":
                self._sink("close", None)

        @self._pc.on("track")
        def on_track(track: MediaStreamTrack) -> None:
            if not self._destroyed:
                self._sink("stream", track)

        if role is PeerRole.INITIATOR:
            self._schedule(self._offer(initial=True))

    def _schedule(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _emit_local_description(self) -> None:
        description = self._pc.localDescription
        self._sink("signal", {"type": description.type, "sdp": description.sdp})

    async def _offer(self, *, initial: bool = False) -> None:
        async with self._lock:
            if self._destroyed:
                return
            try:
                if initial and not self._pc.getTransceivers():
                    self._pc.addTransceiver("audio", direction="recvonly")
                    self._pc.addTransceiver("video", direction="recvonly")
                await self._pc.setLocalDescription(await self._pc.createOffer())
            except Exception as exc:
                logger.info("Creating offer failed: %s", exc)
                self._sink("error", exc)
                return
            self._emit_local_description()

    async def _apply(self, payload: Any) -> None:
        async with self._lock:
            if self._destroyed:
                return
            try:
                if not isinstance(payload, dict):
                    raise ValueError(f"Unsupported negotiation payload: {payload!r}")
                kind = payload.get("type")
                if kind in ("offer", "answer"):
                    await self._pc.setRemoteDescription(
                        RTCSessionDescription(sdp=payload["sdp"], type=kind)
                    )
                    if kind == "offer":
                        await self._pc.setLocalDescription(await self._pc.createAnswer())
                        self._emit_local_description()
                elif "candidate" in payload:
                    await self._add_candidate(payload["candidate"])
                else:
                    raise ValueError(f"Unsupported negotiation payload type: {kind!r}")
            except Exception as exc:
                logger.info("Applying remote %s failed: %s", payload.get("type") if isinstance(payload, dict) else "payload", exc)
                self._sink("error", exc)

    async def _add_candidate(self, data: Any) -> None:
        if not data:
            return
        if isinstance(data, str):
            data = {"candidate": data}
        line = data.get("candidate") or ""
        if not line:
            # end of candidates
            return
        candidate = candidate_from_sdp(line.split(":", 1)[1] if line.startswith("candidate:") else line)
        candidate.sdpMid = data.get("sdpMid")
        candidate.sdpMLineIndex = data.get("sdpMLineIndex")
        await self._pc.addIceCandidate(candidate)

    def signal(self, payload: Any) -> None:
        if not self._destroyed:
            self._schedule(self._apply(payload))

    def add_stream(self, stream: CapturedStream) -> None:
        if self._destroyed:
            return
        for track in getattr(stream, "tracks", ()):
            self._pc.addTrack(track)
        if self._pc.localDescription is not None:
            # already negotiated once; offer again so the new tracks flow
            self._schedule(self._offer())

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        for task in list(self._tasks):
            task.cancel()
        _keep(asyncio.get_running_loop().create_task(self._pc.close()))


def aiortc_transport_factory(
    role: PeerRole, ice_servers: Sequence[IceServer], sink: TransportSink
) -> AiortcPeerTransport:
    return AiortcPeerTransport(role, ice_servers, sink)


__all__ = [
    "AiortcPeerTransport",
    "CapturedStream",
    "MediaPlayerProvider",
    "aiortc_transport_factory",
    "rtc_configuration",
]
