"""Application settings loaded from environment variables.

Uses pydantic-settings for validation and type coercion. App-specific
settings use the ``SAMAYSETU_`` prefix; infrastructure settings use
their canonical environment variable names via ``validation_alias``.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Central configuration for the SamaySetu accountability core.

    Environment variables are loaded from a ``.env`` file when present.
    App-specific keys are prefixed with ``SAMAYSETU_``; infra keys use
    their standard names (configured via ``validation_alias``).
    """

    model_config = SettingsConfigDict(
        env_prefix="SAMAYSETU_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ── App ────────────────────────────────────────────────────────────
    env: Literal["development", "production"] = "development"
    timezone: str = "Asia/Kolkata"

    # ── Redis (persistence collaborator) ───────────────────────────────
    redis_url: str = Field(default="", validation_alias="REDIS_URL")
    store_namespace: str = "samaysetu:"

    # ── API ────────────────────────────────────────────────────────────
    cors_origins: str = ""
    # Shared secret presented by front-end channels (IVR, WhatsApp, kiosk)
    # in ``X-Channel-Key``; they forward the citizen identity in ``X-Owner-Id``.
    channel_api_key: str = ""

    # ── Logging ────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: str = Field(default="json", validation_alias="LOG_FORMAT")

    # ── DPDPA retention & deletion ─────────────────────────────────────
    session_retention_days: int = Field(default=90, ge=1)
    deletion_sla_hours: int = Field(default=24, ge=1)
    retention_sweep_interval_seconds: int = Field(default=3_600, ge=60)
    enable_retention_sweeper: bool = True

    # ── Workflow ───────────────────────────────────────────────────────
    silence_window_seconds: float = 10.0
    max_input_attempts: int = Field(default=3, ge=1)
    concurrency_max_retries: int = Field(default=3, ge=1)

    # ── External collaborators ─────────────────────────────────────────
    collaborator_max_retries: int = Field(default=3, ge=0)
    collaborator_timeout_seconds: float = 8.0
    collaborator_backoff_min_seconds: float = 0.5
    collaborator_backoff_max_seconds: float = 4.0
    extraction_confidence_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    speech_confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)

    extraction_url: str = ""
    speech_url: str = ""
    retrieval_url: str = ""
    generation_url: str = ""

    # ── Calendar policy ────────────────────────────────────────────────
    # "national": a regional jurisdiction without holiday data for a year
    # falls back to the national set (recorded on the result).
    # "strict": raise CalendarDataMissing instead.
    regional_calendar_fallback: Literal["national", "strict"] = "national"

    # ── Derived Properties ─────────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.env == Environment.PRODUCTION

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


# Module-level singleton; import ``settings`` everywhere.
settings = Settings()
