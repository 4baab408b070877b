from __future__ import annotations

import pytest

from stagecast.signaling.envelope import Role
from stagecast.signaling.registry import ParticipantRegistry


class FakeConnection:
    def __init__(self, name: str = "conn") -> None:
        self.name = name
        self.sent: list[str] = []
        self.closed = False

    @property
    def is_open(self) -> bool:
        return not self.closed

    async def send_text(self, data: str) -> bool:
        if self.closed:
            return False
        self.sent.append(data)
        return True

    async def close(self) -> None:
        self.closed = True


@pytest.mark.anyio("asyncio")
async def test_register_inserts_unmuted_participant() -> None:
    registry = ParticipantRegistry()
    connection = FakeConnection()

    participant = await registry.register("h1", Role.HOST, "h1", connection)

    assert participant.muted is False
    assert await registry.lookup("h1") is participant
    assert await registry.count() == 1


@pytest.mark.anyio("asyncio")
async def test_reregistering_from_new_connection_closes_previous() -> None:
    registry = ParticipantRegistry()
    first, second = FakeConnection("first"), FakeConnection("second")
    await registry.register("v1", Role.VIEWER, "h1", first)
    await registry.set_muted("v1", True)

    participant = await registry.register("v1", Role.VIEWER, "h1", second)

    assert first.closed is True
    assert second.closed is False
    assert participant.connection is second
    assert participant.muted is False


@pytest.mark.anyio("asyncio")
async def test_remove_closes_connection_and_forgets_identity() -> None:
    registry = ParticipantRegistry()
    connection = FakeConnection()
    await registry.register("v1", Role.VIEWER, "h1", connection)

    removed = await registry.remove("v1")

    assert removed is not None
    assert connection.closed is True
    assert await registry.lookup("v1") is None


@pytest.mark.anyio("asyncio")
async def test_remove_with_stale_connection_keeps_fresh_registration() -> None:
    registry = ParticipantRegistry()
    stale, fresh = FakeConnection("stale"), FakeConnection("fresh")
    await registry.register("v1", Role.VIEWER, "h1", stale)
    await registry.register("v1", Role.VIEWER, "h1", fresh)

    assert await registry.remove("v1", connection=stale) is None

    participant = await registry.lookup("v1")
    assert participant is not None and participant.connection is fresh
    assert fresh.closed is False


@pytest.mark.anyio("asyncio")
async def test_set_muted_unknown_identity_is_noop() -> None:
    registry = ParticipantRegistry()

    assert await registry.set_muted("ghost", True) is False
    assert await registry.count() == 0


@pytest.mark.anyio("asyncio")
async def test_for_each_visits_snapshot_in_insertion_order() -> None:
    registry = ParticipantRegistry()
    for name in ("h1", "v1", "v2"):
        await registry.register(name, Role.HOST if name == "h1" else Role.VIEWER, "h1", FakeConnection(name))
    seen: list[str] = []

    async def visit(participant) -> None:
        seen.append(participant.identity)
        # mutating during iteration does not affect the snapshot
        await registry.remove("v2")

    await registry.for_each(visit)

    assert seen == ["h1", "v1", "v2"]
    assert [item.identity for item in await registry.snapshot()] == ["h1", "v1"]


@pytest.mark.anyio("asyncio")
async def test_clear_closes_every_connection() -> None:
    registry = ParticipantRegistry()
    connections = [FakeConnection(str(index)) for index in range(3)]
    for index, connection in enumerate(connections):
        await registry.register(f"p{index}", Role.VIEWER, "h1", connection)

    await registry.clear()

    assert all(connection.closed for connection in connections)
    assert await registry.count() == 0


def test_participant_public_view() -> None:
    from stagecast.signaling.registry import Participant

    participant = Participant("v1", Role.VIEWER, "h1", FakeConnection(), muted=True)

    assert participant.to_public() == {"userId": "v1", "role": "viewer", "streamId": "h1", "muted": True}
