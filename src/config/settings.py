"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
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

    # ElevenLabs Conversational AI
    elevenlabs_api_key: str | None = Field(default=None)
    elevenlabs_agent_id: str | None = Field(default=None)
    elevenlabs_signed_url_endpoint: str = Field(
        default="https://api.elevenlabs.io/v1/convai/conversation/get_signed_url",
        description="Endpoint issuing signed WebSocket URLs for an agent conversation.",
    )
    elevenlabs_request_timeout: float = Field(default=10.0, gt=0.0)

    # Twilio (Voice)
    twilio_account_sid: str | None = Field(default=None)
    twilio_auth_token: str | None = Field(default=None)
    twilio_from_number: str | None = Field(default=None, description="E.164, e.g. +1555...")
    public_base_url: str | None = Field(
        default=None,
        description="Public base URL for Twilio webhooks (e.g. https://<ngrok>.ngrok-free.app).",
    )

    # Call tracking
    call_history_size: int = Field(
        default=100,
        ge=0,
        description="How many terminated calls stay queryable after leaving the active table.",
    )
    call_retain_terminated: bool = Field(
        default=False,
        description="If true, terminated calls stay in the active call list.",
    )
    call_record_audio_events: bool = Field(
        default=True,
        description="If true, every relayed audio chunk is appended to the call event log.",
    )

    # Monitoring
    monitor_queue_size: int = Field(
        default=100,
        ge=1,
        description="Per-observer queue size; events beyond it are dropped for that observer.",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
