"""Routing rules for signaling envelopes.

The router never inspects roles: whom a ``request`` or ``approve`` is
addressed to is decided by the clients. Each rule looks at the registry and
the envelope and returns the list of ``(recipient, envelope)`` deliveries;
the caller performs the sends.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, cast

from .envelope import (
    AddressedPayload,
    ChatPayload,
    MessageType,
    MutePayload,
    PeerListPayload,
    QAStreamPayload,
    RegisterPayload,
    SignalEnvelope,
    SignalPayload,
    addressed,
    peer_list,
)
from .registry import Connection, Participant, ParticipantRegistry


logger = logging.getLogger(__name__)

OUTCOME_ROUTED = "routed"
OUTCOME_APPLIED = "applied"
OUTCOME_DROPPED = "dropped"
OUTCOME_REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class Delivery:
    recipient: str
    connection: Connection
    envelope: SignalEnvelope


@dataclass(slots=True)
class RouteResult:
    outcome: str
    deliveries: list[Delivery] = field(default_factory=list)


Rule = Callable[[SignalEnvelope], Awaitable[RouteResult]]


class MessageRouter:
    """Dispatch table from envelope type to routing rule."""

    def __init__(self, registry: ParticipantRegistry, *, scope_broadcasts: bool = False) -> None:
        self._registry = registry
        self._scope_broadcasts = scope_broadcasts
        self._rules: Dict[MessageType, Rule] = {
            MessageType.REGISTER: self._route_register,
            MessageType.SIGNAL: self._route_unicast,
            MessageType.REQUEST: self._route_request,
            MessageType.APPROVE: self._route_unicast,
            MessageType.DENY: self._route_unicast,
            MessageType.QA_STREAM: self._route_qa_stream,
            MessageType.CHAT: self._route_chat,
            MessageType.MUTE: self._route_mute,
            MessageType.UNMUTE: self._route_mute,
            MessageType.PEER_LIST: self._route_peer_list,
        }

    @property
    def registry(self) -> ParticipantRegistry:
        return self._registry

    async def route(self, envelope: SignalEnvelope) -> RouteResult:
        rule = self._rules[envelope.type]
        return await rule(envelope)

    async def register(self, envelope: SignalEnvelope, connection: Connection) -> Participant:
        """Apply a ``register`` envelope for *connection*."""

        fields = cast(RegisterPayload, envelope.fields)
        session_id = fields.stream_id
        if session_id is None:
            # The host identity doubles as the session identifier.
            session_id = fields.user_id
        participant = await self._registry.register(
            fields.user_id, fields.role, session_id, connection
        )
        logger.info(
            "User %s registered as %s in session %s",
            participant.identity,
            participant.role.value,
            participant.session_id,
        )
        return participant

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    async def _route_register(self, envelope: SignalEnvelope) -> RouteResult:
        # Binding a connection needs the socket, so the service calls
        # ``register`` directly; reaching this rule means no socket was given.
        logger.debug("register envelope routed without a connection; ignoring")
        return RouteResult(OUTCOME_DROPPED)

    async def _route_unicast(self, envelope: SignalEnvelope) -> RouteResult:
        fields = cast("SignalPayload | AddressedPayload", envelope.fields)
        target = await self._registry.lookup(fields.to)
        if target is None:
            logger.debug("Dropping %s for unknown target %s", envelope.type.value, fields.to)
            return RouteResult(OUTCOME_DROPPED)
        return RouteResult(OUTCOME_ROUTED, [Delivery(target.identity, target.connection, envelope)])

    async def _route_request(self, envelope: SignalEnvelope) -> RouteResult:
        fields = cast(AddressedPayload, envelope.fields)
        sender = await self._registry.lookup(fields.sender)
        if sender is not None and sender.muted:
            logger.info("Muted user %s requested Q&A; replying with deny", sender.identity)
            deny = addressed(MessageType.DENY, to=sender.identity, sender=fields.to)
            return RouteResult(
                OUTCOME_REJECTED, [Delivery(sender.identity, sender.connection, deny)]
            )
        return await self._route_unicast(envelope)

    async def _route_qa_stream(self, envelope: SignalEnvelope) -> RouteResult:
        fields = cast(QAStreamPayload, envelope.fields)
        participants = await self._audience(fields.sender)
        deliveries = [
            Delivery(item.identity, item.connection, envelope)
            for item in participants
            if item.identity != fields.sender
        ]
        return RouteResult(OUTCOME_ROUTED, deliveries)

    async def _route_chat(self, envelope: SignalEnvelope) -> RouteResult:
        fields = cast(ChatPayload, envelope.fields)
        sender = await self._registry.lookup(fields.sender)
        if sender is None:
            logger.debug("Dropping chat from unregistered user %s", fields.sender)
            return RouteResult(OUTCOME_DROPPED)
        if sender.muted:
            logger.debug("Dropping chat from muted user %s", fields.sender)
            return RouteResult(OUTCOME_REJECTED)
        participants = await self._audience(fields.sender)
        deliveries = [Delivery(item.identity, item.connection, envelope) for item in participants]
        return RouteResult(OUTCOME_ROUTED, deliveries)

    async def _route_mute(self, envelope: SignalEnvelope) -> RouteResult:
        fields = cast(MutePayload, envelope.fields)
        muted = envelope.type is MessageType.MUTE
        if await self._registry.set_muted(fields.user_id, muted):
            logger.info("User %s %s", fields.user_id, "muted" if muted else "unmuted")
        return RouteResult(OUTCOME_APPLIED)

    async def _route_peer_list(self, envelope: SignalEnvelope) -> RouteResult:
        fields = cast(PeerListPayload, envelope.fields)
        if fields.sender is None:
            return RouteResult(OUTCOME_DROPPED)
        sender = await self._registry.lookup(fields.sender)
        if sender is None:
            return RouteResult(OUTCOME_DROPPED)
        members = [
            item.identity
            for item in await self._registry.snapshot()
            if item.session_id == sender.session_id and item.identity != sender.identity
        ]
        reply = peer_list(members)
        return RouteResult(OUTCOME_ROUTED, [Delivery(sender.identity, sender.connection, reply)])

    async def _audience(self, sender_identity: str) -> list[Participant]:
        participants = await self._registry.snapshot()
        if not self._scope_broadcasts:
            return participants
        sender = next((item for item in participants if item.identity == sender_identity), None)
        if sender is None:
            # unknown sender, no session to scope to
            return []
        return [item for item in participants if item.session_id == sender.session_id]


__all__ = [
    "Delivery",
    "MessageRouter",
    "RouteResult",
    "OUTCOME_APPLIED",
    "OUTCOME_DROPPED",
    "OUTCOME_REJECTED",
    "OUTCOME_ROUTED",
]
