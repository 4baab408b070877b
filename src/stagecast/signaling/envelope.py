"""Wire format for the signaling channel.

Every frame exchanged with the coordination service is a JSON object of the
shape ``{"type": ..., "payload": {...}}``. This module owns parsing and
serialisation of that envelope together with the per-type payload schemas so
the router and the client orchestrator never have to poke at raw dictionaries
that were not validated first.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, constr


SESSION_CLOSED_TEXT = "Session Closed"

# Connection-level heartbeat frames. They are not envelopes and never reach
# the router.
KEEPALIVE_PING = "ping"
KEEPALIVE_PONG = "pong"
KEEPALIVE_TYPES = {KEEPALIVE_PING, KEEPALIVE_PONG}


class MessageType(str, Enum):
    REGISTER = "register"
    SIGNAL = "signal"
    CHAT = "chat"
    MUTE = "mute"
    UNMUTE = "unmute"
    REQUEST = "request"
    APPROVE = "approve"
    DENY = "deny"
    QA_STREAM = "qa_stream"
    PEER_LIST = "peer_list"


class Role(str, Enum):
    HOST = "host"
    VIEWER = "viewer"


class ProtocolError(ValueError):
    """Raised when a frame cannot be turned into a valid envelope."""

    def __init__(self, reason: str, detail: str) -> None:
        super().__init__(detail)
        self.reason = reason
        self.detail = detail


Identity = constr(strip_whitespace=True, min_length=1, max_length=256)


class _Payload(BaseModel):
    # Unknown keys are tolerated; forwarding uses the raw payload anyway.
    model_config = ConfigDict(extra="allow", frozen=True)


class RegisterPayload(_Payload):
    user_id: Identity = Field(..., alias="userId")
    role: Role
    stream_id: Identity | None = Field(default=None, alias="streamId")


class SignalPayload(_Payload):
    to: Identity
    sender: Identity = Field(..., alias="from")
    signal: Any = Field(...)


class ChatPayload(_Payload):
    sender: Identity = Field(..., alias="from")
    to: str | None = None
    text: str
    sent_by: str | None = Field(default=None, alias="sentBy")


class MutePayload(_Payload):
    user_id: Identity = Field(..., alias="userId")


class AddressedPayload(_Payload):
    """Payload shared by ``request``, ``approve`` and ``deny``."""

    to: Identity
    sender: Identity = Field(..., alias="from")


class QAStreamPayload(_Payload):
    sender: Identity = Field(..., alias="from")
    to: str | None = None


class PeerListPayload(_Payload):
    peers: list[str] = Field(default_factory=list)
    sender: str | None = Field(default=None, alias="from")


PAYLOAD_SCHEMAS: Dict[MessageType, type[_Payload]] = {
    MessageType.REGISTER: RegisterPayload,
    MessageType.SIGNAL: SignalPayload,
    MessageType.CHAT: ChatPayload,
    MessageType.MUTE: MutePayload,
    MessageType.UNMUTE: MutePayload,
    MessageType.REQUEST: AddressedPayload,
    MessageType.APPROVE: AddressedPayload,
    MessageType.DENY: AddressedPayload,
    MessageType.QA_STREAM: QAStreamPayload,
    MessageType.PEER_LIST: PeerListPayload,
}


@dataclass(frozen=True, slots=True)
class SignalEnvelope:
    """A validated ``{type, payload}`` frame.

    ``payload`` keeps the dictionary exactly as received so that relayed
    frames are re-serialised unchanged; ``fields`` is the schema-checked view
    used for routing decisions.
    """

    type: MessageType
    payload: Mapping[str, Any]
    fields: _Payload = field(compare=False, repr=False)

    @classmethod
    def build(cls, message_type: MessageType | str, payload: Mapping[str, Any]) -> "SignalEnvelope":
        try:
            kind = MessageType(message_type)
        except ValueError as exc:
            raise ProtocolError("unknown_type", f"Unsupported message type: {message_type!r}") from exc
        if not isinstance(payload, Mapping):
            raise ProtocolError("invalid_payload", "Envelope payload must be a JSON object")
        try:
            fields = PAYLOAD_SCHEMAS[kind].model_validate(dict(payload))
        except ValidationError as exc:
            raise ProtocolError(
                "invalid_payload", f"Invalid {kind.value} payload: {exc.error_count()} error(s)"
            ) from exc
        return cls(type=kind, payload=dict(payload), fields=fields)

    @classmethod
    def from_dict(cls, data: Any) -> "SignalEnvelope":
        if not isinstance(data, dict):
            raise ProtocolError("not_an_object", "Frame must be a JSON object")
        message_type = data.get("type")
        if not isinstance(message_type, str) or not message_type:
            raise ProtocolError("missing_type", "Frame type must be provided")
        return cls.build(message_type, data.get("payload"))

    @classmethod
    def from_text(cls, raw: str | bytes) -> "SignalEnvelope":
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ProtocolError("malformed_json", "Frame is not valid JSON") from exc
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "payload": dict(self.payload)}

    def to_text(self) -> str:
        return json.dumps(self.to_dict())


def frame_type(raw: str | bytes) -> str | None:
    """Return the ``type`` of a frame without validating it, if it has one."""

    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if isinstance(data, dict) and isinstance(data.get("type"), str):
        return data["type"]
    return None


def keepalive_frame(kind: str) -> str:
    return json.dumps({"type": kind})


# Convenience constructors used by both halves of the system ------------------


def register(user_id: str, role: Role | str, stream_id: str) -> SignalEnvelope:
    return SignalEnvelope.build(
        MessageType.REGISTER,
        {"userId": user_id, "role": Role(role).value, "streamId": stream_id},
    )


def signal(to: str, sender: str, payload: Any) -> SignalEnvelope:
    return SignalEnvelope.build(MessageType.SIGNAL, {"to": to, "from": sender, "signal": payload})


def chat(sender: str, text: str, *, to: str | None = None, sent_by: str | None = None) -> SignalEnvelope:
    return SignalEnvelope.build(
        MessageType.CHAT, {"from": sender, "to": to, "text": text, "sentBy": sent_by}
    )


def addressed(message_type: MessageType, to: str, sender: str) -> SignalEnvelope:
    return SignalEnvelope.build(message_type, {"to": to, "from": sender})


def mute(user_id: str, *, muted: bool = True) -> SignalEnvelope:
    kind = MessageType.MUTE if muted else MessageType.UNMUTE
    return SignalEnvelope.build(kind, {"userId": user_id})


def qa_stream(sender: str) -> SignalEnvelope:
    return SignalEnvelope.build(MessageType.QA_STREAM, {"from": sender, "to": None})


def peer_list(peers: list[str], *, sender: str | None = None) -> SignalEnvelope:
    payload: Dict[str, Any] = {"peers": list(peers)}
    if sender is not None:
        payload["from"] = sender
    return SignalEnvelope.build(MessageType.PEER_LIST, payload)


__all__ = [
    "KEEPALIVE_PING",
    "KEEPALIVE_PONG",
    "KEEPALIVE_TYPES",
    "SESSION_CLOSED_TEXT",
    "MessageType",
    "ProtocolError",
    "Role",
    "SignalEnvelope",
    "frame_type",
    "keepalive_frame",
    "register",
    "signal",
    "chat",
    "addressed",
    "mute",
    "qa_stream",
    "peer_list",
]
