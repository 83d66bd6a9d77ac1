"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    environment: Literal["local", "dev", "prod"] = Field(default="local")
    log_level: str = Field(default="INFO")

    # HTTP / WebSocket listener
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8443)
    static_dir: Path | None = Field(
        default=None,
        description="Optional directory with the browser client, served at /.",
    )

    # Kurento media server
    media_server_uri: str = Field(
        default="ws://localhost:8888/kurento",
        description="JSON-RPC WebSocket endpoint of the media server.",
    )
    media_request_timeout_seconds: float = Field(default=10.0, gt=0)
    provisioning_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Upper bound for building and negotiating one call's media pipeline.",
    )
    recording_uri_template: str = Field(
        default="file:///tmp/{session_id}.webm",
        description="Recorder target per participant; {session_id} is substituted.",
    )

    @field_validator("recording_uri_template")
    @classmethod
    def ensure_session_placeholder(cls, value: str) -> str:
        if "{session_id}" not in value:
            raise ValueError("recording_uri_template must contain {session_id}")
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
