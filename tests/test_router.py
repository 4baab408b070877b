from __future__ import annotations

import pytest

from stagecast.signaling import envelope as env
from stagecast.signaling.envelope import MessageType, Role
from stagecast.signaling.registry import ParticipantRegistry
from stagecast.signaling.router import (
    OUTCOME_APPLIED,
    OUTCOME_DROPPED,
    OUTCOME_REJECTED,
    OUTCOME_ROUTED,
    MessageRouter,
)


class FakeConnection:
    def __init__(self) -> None:
        self.closed = False

    @property
    def is_open(self) -> bool:
        return not self.closed

    async def send_text(self, data: str) -> bool:
        return not self.closed

    async def close(self) -> None:
        self.closed = True


async def _populate(router: MessageRouter, *members: tuple[str, str, str]) -> None:
    for identity, role, session in members:
        await router.register(env.register(identity, role, session), FakeConnection())


@pytest.fixture()
def registry() -> ParticipantRegistry:
    return ParticipantRegistry()


@pytest.fixture()
def router(registry: ParticipantRegistry) -> MessageRouter:
    return MessageRouter(registry)


@pytest.mark.anyio("asyncio")
async def test_register_uses_stream_id_as_session(router: MessageRouter, registry: ParticipantRegistry) -> None:
    await _populate(router, ("h1", "host", "h1"), ("v1", "viewer", "h1"))

    viewer = await registry.lookup("v1")
    assert viewer is not None
    assert viewer.role is Role.VIEWER
    assert viewer.session_id == "h1"


@pytest.mark.anyio("asyncio")
async def test_register_envelope_routed_without_socket_is_dropped(router: MessageRouter) -> None:
    result = await router.route(env.register("v1", "viewer", "h1"))

    assert result.outcome == OUTCOME_DROPPED
    assert result.deliveries == []


@pytest.mark.anyio("asyncio")
async def test_signal_is_unicast_verbatim(router: MessageRouter) -> None:
    await _populate(router, ("h1", "host", "h1"), ("v1", "viewer", "h1"), ("v2", "viewer", "h1"))
    envelope = env.signal("h1", "v1", {"type": "offer", "sdp": "v=0"})

    result = await router.route(envelope)

    assert result.outcome == OUTCOME_ROUTED
    assert [delivery.recipient for delivery in result.deliveries] == ["h1"]
    assert result.deliveries[0].envelope is envelope


@pytest.mark.anyio("asyncio")
async def test_signal_to_unknown_target_is_dropped(router: MessageRouter) -> None:
    await _populate(router, ("v1", "viewer", "h1"))

    result = await router.route(env.signal("ghost", "v1", {}))

    assert result.outcome == OUTCOME_DROPPED
    assert result.deliveries == []


@pytest.mark.anyio("asyncio")
async def test_request_from_muted_sender_is_answered_with_deny(
    router: MessageRouter, registry: ParticipantRegistry
) -> None:
    await _populate(router, ("h1", "host", "h1"), ("v1", "viewer", "h1"))
    await router.route(env.mute("v1"))

    result = await router.route(env.addressed(MessageType.REQUEST, to="h1", sender="v1"))

    assert result.outcome == OUTCOME_REJECTED
    assert len(result.deliveries) == 1
    delivery = result.deliveries[0]
    assert delivery.recipient == "v1"
    assert delivery.envelope.type is MessageType.DENY
    assert delivery.envelope.payload == {"to": "v1", "from": "h1"}


@pytest.mark.anyio("asyncio")
async def test_request_from_unmuted_sender_reaches_target(router: MessageRouter) -> None:
    await _populate(router, ("h1", "host", "h1"), ("v1", "viewer", "h1"))

    result = await router.route(env.addressed(MessageType.REQUEST, to="h1", sender="v1"))

    assert [delivery.recipient for delivery in result.deliveries] == ["h1"]
    assert result.deliveries[0].envelope.type is MessageType.REQUEST


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize("kind", [MessageType.APPROVE, MessageType.DENY])
async def test_approve_and_deny_are_unicast(router: MessageRouter, kind: MessageType) -> None:
    await _populate(router, ("h1", "host", "h1"), ("v1", "viewer", "h1"), ("v2", "viewer", "h1"))

    result = await router.route(env.addressed(kind, to="v1", sender="h1"))

    assert [delivery.recipient for delivery in result.deliveries] == ["v1"]


@pytest.mark.anyio("asyncio")
async def test_qa_stream_reaches_everyone_but_sender(router: MessageRouter) -> None:
    await _populate(router, ("h1", "host", "h1"), ("v1", "viewer", "h1"), ("v2", "viewer", "h1"))

    result = await router.route(env.qa_stream("v1"))

    assert [delivery.recipient for delivery in result.deliveries] == ["h1", "v2"]


@pytest.mark.anyio("asyncio")
async def test_chat_is_broadcast_including_sender(router: MessageRouter) -> None:
    await _populate(router, ("h1", "host", "h1"), ("v1", "viewer", "h1"), ("x1", "host", "x1"))

    result = await router.route(env.chat("v1", "hi"))

    assert result.outcome == OUTCOME_ROUTED
    assert [delivery.recipient for delivery in result.deliveries] == ["h1", "v1", "x1"]


@pytest.mark.anyio("asyncio")
async def test_chat_from_muted_or_unknown_sender_is_dropped(router: MessageRouter) -> None:
    await _populate(router, ("h1", "host", "h1"), ("v1", "viewer", "h1"))
    await router.route(env.mute("v1"))

    muted = await router.route(env.chat("v1", "hi"))
    unknown = await router.route(env.chat("ghost", "hi"))

    assert muted.outcome == OUTCOME_REJECTED and muted.deliveries == []
    assert unknown.outcome == OUTCOME_DROPPED and unknown.deliveries == []


@pytest.mark.anyio("asyncio")
async def test_mute_and_unmute_update_registry_without_deliveries(
    router: MessageRouter, registry: ParticipantRegistry
) -> None:
    await _populate(router, ("h1", "host", "h1"), ("v1", "viewer", "h1"))

    muted = await router.route(env.mute("v1"))
    assert muted.outcome == OUTCOME_APPLIED and muted.deliveries == []
    assert (await registry.lookup("v1")).muted is True

    await router.route(env.mute("v1", muted=False))
    assert (await registry.lookup("v1")).muted is False

    ghost = await router.route(env.mute("ghost"))
    assert ghost.deliveries == []


@pytest.mark.anyio("asyncio")
async def test_peer_list_query_lists_other_session_members(router: MessageRouter) -> None:
    await _populate(
        router,
        ("h1", "host", "h1"),
        ("v1", "viewer", "h1"),
        ("v2", "viewer", "h1"),
        ("x1", "host", "x1"),
    )

    result = await router.route(env.peer_list([], sender="v1"))

    assert [delivery.recipient for delivery in result.deliveries] == ["v1"]
    reply = result.deliveries[0].envelope
    assert reply.type is MessageType.PEER_LIST
    assert reply.payload == {"peers": ["h1", "v2"]}


@pytest.mark.anyio("asyncio")
async def test_peer_list_without_sender_is_dropped(router: MessageRouter) -> None:
    result = await router.route(env.peer_list(["a"]))

    assert result.outcome == OUTCOME_DROPPED


@pytest.mark.anyio("asyncio")
async def test_scoped_broadcasts_stay_inside_session(registry: ParticipantRegistry) -> None:
    router = MessageRouter(registry, scope_broadcasts=True)
    await _populate(
        router,
        ("h1", "host", "h1"),
        ("v1", "viewer", "h1"),
        ("x1", "host", "x1"),
        ("y1", "viewer", "x1"),
    )

    chat = await router.route(env.chat("v1", "hi"))
    stream = await router.route(env.qa_stream("v1"))

    assert [delivery.recipient for delivery in chat.deliveries] == ["h1", "v1"]
    assert [delivery.recipient for delivery in stream.deliveries] == ["h1"]
