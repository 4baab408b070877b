"""WebSocket endpoint for the signaling channel."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TypeVar

from fastapi import APIRouter, Depends, WebSocket
from fastapi.websockets import WebSocketDisconnect, WebSocketState

from stagecast.realtime import (
    SessionCoordinationService,
    WebSocketConnection,
    get_signaling_service,
    safe_send_text,
)
from stagecast.signaling.envelope import KEEPALIVE_PING, keepalive_frame

from app.config import get_settings


router = APIRouter(prefix="/ws", tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def receive_frame(websocket: WebSocket) -> str | bytes:
    """Receive the next text or binary frame, raising on disconnect."""

    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
    text = message.get("text")
    if text is not None:
        return text
    return message.get("bytes") or b""


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_frame: str | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver*, pinging the peer while it is idle.

    A ping goes out every ``ping_interval_seconds`` of silence. The socket is
    given up once a ping has stayed unanswered for ``timeout_seconds``.
    """

    ping_frame = ping_frame or keepalive_frame(KEEPALIVE_PING)
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    windows = [value for value in (timeout, interval) if value > 0]
    wait = min(windows) if windows else None
    last_activity = time.monotonic()
    last_ping_sent: float | None = None
    unanswered_since: float | None = None

    while True:
        try:
            if wait is not None:
                message = await asyncio.wait_for(receiver(), timeout=wait)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break

            now = time.monotonic()
            if timeout > 0 and unanswered_since is not None and now - unanswered_since >= timeout:
                logger.info("Closing idle signaling socket %s", websocket.client)
                break
            if interval <= 0 or (
                now - last_activity >= interval
                and (last_ping_sent is None or now - last_ping_sent >= interval)
            ):
                if not await safe_send_text(websocket, ping_frame):
                    break
                last_ping_sent = now
                if unanswered_since is None:
                    unanswered_since = now
            continue
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            unanswered_since = None
            yield message


@router.websocket("/signal")
async def websocket_signal(
    websocket: WebSocket,
    service: SessionCoordinationService = Depends(get_signaling_service),
) -> None:
    """Relay signaling envelopes between the participants of a broadcast."""

    await websocket.accept()
    connection = WebSocketConnection(websocket)
    frames = iter_keepalive_messages(
        websocket,
        lambda: receive_frame(websocket),
        timeout_seconds=settings.websocket_keepalive_timeout_seconds,
        ping_interval_seconds=settings.websocket_keepalive_ping_interval_seconds,
    )
    try:
        await service.serve(connection, frames)
    finally:
        connection.mark_closed()
