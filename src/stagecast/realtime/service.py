"""Process-wide signaling service: one registry, one router, one task per socket."""

from __future__ import annotations

import logging
from typing import AsyncIterator

from app.config import get_settings
from app.monitoring.metrics import (
    signaling_connections,
    signaling_deliveries_total,
    signaling_messages_total,
    signaling_protocol_errors_total,
)

from ..signaling.envelope import (
    KEEPALIVE_PING,
    KEEPALIVE_PONG,
    MessageType,
    ProtocolError,
    SignalEnvelope,
    frame_type,
    keepalive_frame,
)
from ..signaling.registry import Connection, ParticipantRegistry
from ..signaling.router import OUTCOME_APPLIED, OUTCOME_DROPPED, Delivery, MessageRouter


logger = logging.getLogger(__name__)


class SessionCoordinationService:
    """Accept participant connections and route their envelopes.

    ``serve`` runs once per connection and handles frames strictly in arrival
    order: a frame is parsed, routed and delivered before the next one is
    read, which is what keeps negotiation payloads between two parties in
    order.
    """

    def __init__(self, *, scope_broadcasts: bool = False) -> None:
        self.registry = ParticipantRegistry()
        self.router = MessageRouter(self.registry, scope_broadcasts=scope_broadcasts)

    async def serve(self, connection: Connection, frames: AsyncIterator[str | bytes]) -> None:
        identity: str | None = None
        signaling_connections.labels("signal").inc()
        try:
            async for raw in frames:
                identity = await self.handle_frame(connection, raw, identity)
        except (RuntimeError, OSError) as exc:
            logger.info("Signaling connection error for %s: %s", identity or "<unregistered>", exc)
        finally:
            signaling_connections.labels("signal").dec()
            if identity is not None:
                departed = await self.registry.remove(identity, connection=connection)
                if departed is not None:
                    logger.info("User %s disconnected", identity)
            elif connection.is_open:
                await connection.close()

    async def handle_frame(
        self, connection: Connection, raw: str | bytes, identity: str | None
    ) -> str | None:
        """Process one inbound frame and return the identity bound to *connection*."""

        if isinstance(raw, bytes):
            logger.warning("Dropping binary frame from %s", identity or "<unregistered>")
            signaling_protocol_errors_total.labels("binary_frame").inc()
            return identity

        kind = frame_type(raw)
        if kind == KEEPALIVE_PING:
            await connection.send_text(keepalive_frame(KEEPALIVE_PONG))
            return identity
        if kind == KEEPALIVE_PONG:
            return identity

        try:
            envelope = SignalEnvelope.from_text(raw)
        except ProtocolError as exc:
            logger.warning("Dropping frame from %s (%s): %s", identity or "<unregistered>", exc.reason, exc.detail)
            signaling_protocol_errors_total.labels(exc.reason).inc()
            return identity

        if envelope.type is MessageType.REGISTER:
            return await self._bind(connection, envelope, identity)

        if identity is None:
            logger.debug("Dropping %s received before register", envelope.type.value)
            signaling_messages_total.labels(envelope.type.value, "unregistered").inc()
            return identity

        try:
            result = await self.router.route(envelope)
        except Exception:
            logger.exception("Failed to route %s from %s", envelope.type.value, identity)
            signaling_messages_total.labels(envelope.type.value, "error").inc()
            return identity

        signaling_messages_total.labels(envelope.type.value, result.outcome).inc()
        await self._deliver(result.deliveries)
        return identity

    async def _bind(
        self, connection: Connection, envelope: SignalEnvelope, identity: str | None
    ) -> str | None:
        user_id = getattr(envelope.fields, "user_id", None)
        if identity is not None and identity != user_id:
            logger.warning(
                "Connection bound to %s tried to register as %s; ignoring", identity, user_id
            )
            signaling_messages_total.labels("register", OUTCOME_DROPPED).inc()
            return identity
        participant = await self.router.register(envelope, connection)
        signaling_messages_total.labels("register", OUTCOME_APPLIED).inc()
        return participant.identity

    async def _deliver(self, deliveries: list[Delivery]) -> None:
        encoded: dict[int, str] = {}
        for delivery in deliveries:
            key = id(delivery.envelope)
            text = encoded.get(key)
            if text is None:
                text = encoded[key] = delivery.envelope.to_text()
            if await delivery.connection.send_text(text):
                signaling_deliveries_total.labels(delivery.envelope.type.value).inc()
            else:
                logger.debug("Delivery of %s to %s failed", delivery.envelope.type.value, delivery.recipient)


# ---------------------------------------------------------------------------
# Module level lifecycle helpers
# ---------------------------------------------------------------------------


_service: SessionCoordinationService | None = None


def get_signaling_service() -> SessionCoordinationService:
    global _service
    if _service is None:
        settings = get_settings()
        _service = SessionCoordinationService(
            scope_broadcasts=settings.signaling_scope_broadcasts_to_session
        )
    return _service


async def shutdown_signaling() -> None:
    if _service is not None:
        await _service.registry.clear()


__all__ = [
    "SessionCoordinationService",
    "get_signaling_service",
    "shutdown_signaling",
]
