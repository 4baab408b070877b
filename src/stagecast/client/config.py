"""Participant-side settings."""

from __future__ import annotations

import json
from functools import lru_cache
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_STUN_SERVERS = (
    "stun:stun.l.google.com:19302",
    "stun:global.stun.twilio.com:3478",
)


class IceServer(BaseModel):
    """Representation of a WebRTC ICE server configuration."""

    urls: list[str] = Field(default_factory=list, description="ICE server URLs")
    username: str | None = Field(default=None, description="Optional TURN username")
    credential: str | None = Field(default=None, description="Optional TURN credential")

    @field_validator("urls", mode="before")
    @classmethod
    def ensure_list(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            return [value]
        if isinstance(value, (list, tuple, set)):
            return [str(item) for item in value]
        return [] if value is None else [str(value)]


class ClientSettings(BaseSettings):
    """Settings for a participant process, read from ``STAGECAST_*`` variables."""

    service_url: str = Field(
        default="ws://localhost:8880/ws/signal",
        description="Websocket URL of the coordination service",
    )
    reconnect_base_delay_seconds: float = Field(default=2.0, gt=0)
    max_reconnect_attempts: int = Field(default=5, ge=0)
    peer_retry_limit: int = Field(default=3, ge=0)
    peer_retry_delay_seconds: float = Field(default=2.0, ge=0)
    session_end_countdown_ticks: int = Field(default=20, ge=0)
    countdown_tick_seconds: float = Field(default=1.0, ge=0)
    ice_servers: Annotated[list[IceServer], NoDecode] = Field(
        default_factory=lambda: [IceServer(urls=list(DEFAULT_STUN_SERVERS))],
        description="STUN/TURN servers handed to every peer transport",
    )

    model_config = SettingsConfigDict(
        env_prefix="STAGECAST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("ice_servers", mode="before")
    @classmethod
    def parse_ice_servers(cls, value: Any) -> list[Any]:
        if value in (None, ""):
            return [IceServer(urls=list(DEFAULT_STUN_SERVERS))]
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError:
                return [{"urls": item.strip()} for item in value.split(",") if item.strip()]
            value = parsed
        if isinstance(value, dict):
            return [value]
        if isinstance(value, (list, tuple)):
            return [{"urls": item} if isinstance(item, str) else item for item in value]
        return [value]


@lru_cache
def get_client_settings() -> ClientSettings:
    return ClientSettings()


__all__ = ["ClientSettings", "DEFAULT_STUN_SERVERS", "IceServer", "get_client_settings"]
