"""Adapters between framework websockets and the registry's connection handle."""

from __future__ import annotations

import logging

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState


logger = logging.getLogger(__name__)


async def safe_send_text(websocket: WebSocket, data: str) -> bool:
    """Send a text frame, returning ``False`` instead of raising when the peer is gone."""

    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_text(data)
        return True
    except (WebSocketDisconnect, RuntimeError, OSError) as exc:
        logger.debug("Failed to send websocket message: %s", exc)
        return False


class WebSocketConnection:
    """Registry connection handle backed by a FastAPI websocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self._closed = False

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self.websocket.application_state == WebSocketState.CONNECTED
            and self.websocket.client_state == WebSocketState.CONNECTED
        )

    async def send_text(self, data: str) -> bool:
        if self._closed:
            return False
        return await safe_send_text(self.websocket, data)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.websocket.application_state == WebSocketState.CONNECTED:
            try:
                await self.websocket.close()
            except (RuntimeError, OSError) as exc:
                logger.debug("Websocket already closed: %s", exc)

    def mark_closed(self) -> None:
        self._closed = True

    def __repr__(self) -> str:
        client = self.websocket.client
        peer = f"{client.host}:{client.port}" if client else "?"
        return f"<WebSocketConnection {peer} open={self.is_open}>"


__all__ = ["WebSocketConnection", "safe_send_text"]
