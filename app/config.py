from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import AliasChoices, AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Signaling service settings loaded from environment variables."""

    app_name: str = Field(default="Stagecast Signaling", description="Human readable service name")
    environment: str = Field(default="development", description="Deployment environment name")
    debug: bool = Field(default=False, description="Enable debug mode")

    listen_host: str = Field(
        default="0.0.0.0",
        validation_alias=AliasChoices("SIGNALING_HOST", "listen_host"),
        description="Interface the ASGI server binds to",
    )
    listen_port: int = Field(
        default=8880,
        ge=1,
        le=65535,
        validation_alias=AliasChoices("SIGNALING_PORT", "listen_port"),
        description="Port the ASGI server binds to",
    )
    log_level: str = Field(default="INFO", description="Root logging level")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:8080",
            "http://127.0.0.1",
            "http://127.0.0.1:8080",
        ],
        description="List of allowed CORS origins",
    )
    cors_allow_origin_regex: str | None = Field(
        default=r"^https?://(localhost|127\.0\.0\.1|\[::1\])(:\d+)?$",
        description="Optional regular expression that matches allowed CORS origins",
    )

    websocket_keepalive_timeout_seconds: float = Field(
        default=30,
        gt=0,
        description="Close a signaling socket once a keepalive ping has gone unanswered this long.",
    )
    websocket_keepalive_ping_interval_seconds: float = Field(
        default=15,
        gt=0,
        description="Idle time after which the service pings the client.",
    )
    signaling_scope_broadcasts_to_session: bool = Field(
        default=False,
        description="Deliver chat and qa_stream broadcasts only to the sender's session.",
    )

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[1] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v):  # type: ignore[override]
        if v in (None, "", Ellipsis):
            return []
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        level = str(value).strip().upper()
        if level not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(f"Unsupported log level: {value!r}")
        return level


@lru_cache
def get_settings() -> Settings:
    return Settings()
