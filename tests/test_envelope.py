from __future__ import annotations

import json

import pytest

from stagecast.signaling import envelope as env
from stagecast.signaling.envelope import (
    ChatPayload,
    MessageType,
    ProtocolError,
    RegisterPayload,
    Role,
    SignalEnvelope,
    frame_type,
)


def test_register_frame_parses_into_typed_fields() -> None:
    raw = json.dumps({"type": "register", "payload": {"userId": "v1", "role": "viewer", "streamId": "h1"}})

    envelope = SignalEnvelope.from_text(raw)

    assert envelope.type is MessageType.REGISTER
    assert isinstance(envelope.fields, RegisterPayload)
    assert envelope.fields.user_id == "v1"
    assert envelope.fields.role is Role.VIEWER
    assert envelope.fields.stream_id == "h1"


def test_signal_payload_is_kept_verbatim() -> None:
    payload = {"to": "h1", "from": "v1", "signal": {"type": "offer", "sdp": "v=0"}, "extra": [1, 2]}

    envelope = SignalEnvelope.from_dict({"type": "signal", "payload": payload})

    assert json.loads(envelope.to_text()) == {"type": "signal", "payload": payload}


def test_chat_fields_use_wire_aliases() -> None:
    envelope = env.chat("h1", "hello", to="h1", sent_by="Host")

    assert isinstance(envelope.fields, ChatPayload)
    assert envelope.fields.sender == "h1"
    assert envelope.fields.sent_by == "Host"
    assert envelope.to_dict()["payload"] == {"from": "h1", "to": "h1", "text": "hello", "sentBy": "Host"}


@pytest.mark.parametrize(
    ("raw", "reason"),
    [
        ("not json", "malformed_json"),
        ("[1, 2]", "not_an_object"),
        ('{"payload": {}}', "missing_type"),
        ('{"type": "teleport", "payload": {}}', "unknown_type"),
        ('{"type": "signal", "payload": "x"}', "invalid_payload"),
        ('{"type": "signal", "payload": {"to": "h1"}}', "invalid_payload"),
        ('{"type": "register", "payload": {"userId": "v1", "role": "admin"}}', "invalid_payload"),
    ],
)
def test_invalid_frames_raise_protocol_error(raw: str, reason: str) -> None:
    with pytest.raises(ProtocolError) as excinfo:
        SignalEnvelope.from_text(raw)

    assert excinfo.value.reason == reason


def test_frame_type_reads_keepalive_frames() -> None:
    assert frame_type('{"type": "ping"}') == "ping"
    assert frame_type("garbage") is None
    assert frame_type("[]") is None


def test_constructors_build_expected_payloads() -> None:
    assert env.addressed(MessageType.APPROVE, to="v1", sender="h1").payload == {"to": "v1", "from": "h1"}
    assert env.mute("v2").type is MessageType.MUTE
    assert env.mute("v2", muted=False).type is MessageType.UNMUTE
    assert env.qa_stream("v1").payload == {"from": "v1", "to": None}
    assert env.peer_list(["a"], sender="b").payload == {"peers": ["a"], "from": "b"}
    assert env.register("h1", "host", "h1").payload == {"userId": "h1", "role": "host", "streamId": "h1"}
