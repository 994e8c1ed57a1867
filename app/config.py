"""
Vettly — Application Configuration

Loads all configuration from environment variables (and an optional .env file)
using Pydantic Settings.  A cached ``get_settings()`` helper is provided so that
FastAPI dependency-injection (and any other call-site) always receives the same
validated instance without re-parsing the environment on every request.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Dict

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the Vettly matchmaking service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Gemini LLM (match explanations + weekly tips)
    # ------------------------------------------------------------------ #
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL_PRIMARY: str = "gemini-2.5-flash"
    GEMINI_MODEL_FALLBACK: str = "gemini-2.0-flash"
    LLM_TIMEOUT_SECONDS: float = 30.0
    LLM_MAX_ATTEMPTS: int = 3

    # ------------------------------------------------------------------ #
    # Database – Cloud SQL via Unix socket or private IP
    # ------------------------------------------------------------------ #
    DATABASE_URL: str = "postgresql+asyncpg://vettly_user@localhost:5432/vettly"
    DB_USER: str = "vettly_user"
    DB_PASSWORD: str = ""
    DB_NAME: str = "vettly"
    CLOUD_SQL_INSTANCE_CONNECTION: str = ""
    CLOUD_SQL_USE_UNIX_SOCKET: bool = True

    # ------------------------------------------------------------------ #
    # Redis – active tip cache
    # ------------------------------------------------------------------ #
    REDIS_URL: str = "redis://localhost:6379/0"
    ACTIVE_TIP_CACHE_TTL_SECONDS: int = 3600

    # ------------------------------------------------------------------ #
    # Stripe – payment-completed webhook
    # ------------------------------------------------------------------ #
    STRIPE_API_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""

    # ------------------------------------------------------------------ #
    # Compatibility scoring weights
    # ------------------------------------------------------------------ #
    DIMENSION_WEIGHTS: Dict[str, float] = {
        "values": 0.30,
        "lifestyle": 0.25,
        "emotional": 0.20,
        "loveLanguage": 0.15,
        "attraction": 0.10,
    }

    # ------------------------------------------------------------------ #
    # Match workflow
    # ------------------------------------------------------------------ #
    MATCH_EXPIRY_DAYS: int = 7
    MIN_DATA_QUALITY_SCORE: int = 40
    VIRTUAL_MEETING_TIMEZONE: str = "Australia/Sydney"
    VIRTUAL_MEETING_DAYS_AHEAD: int = 3
    VIRTUAL_MEETING_HOUR: int = 10
    VIRTUAL_MEETING_DURATION_MINUTES: int = 15

    # ------------------------------------------------------------------ #
    # Scheduler – weekly tip job + stale match sweep
    # ------------------------------------------------------------------ #
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TIMEZONE: str = "Australia/Sydney"
    # APScheduler counts weekdays from mon=0, so name the day.
    WEEKLY_TIP_CRON: str = "0 1 * * mon"
    WEEKLY_TIP_AUTHOR: str = "AI Assistant"
    MATCH_EXPIRY_SWEEP_MINUTES: int = 60

    # ------------------------------------------------------------------ #
    # Runtime environment
    # ------------------------------------------------------------------ #
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    REQUEST_TIMEOUT_SECONDS: float = 70.0
    SHUTDOWN_DRAIN_SECONDS: float = 15.0

    # ------------------------------------------------------------------ #
    # CORS
    # ------------------------------------------------------------------ #
    ALLOWED_ORIGINS: str = "*"

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #
    @property
    def allowed_origins_list(self) -> list[str]:
        """Return ALLOWED_ORIGINS as a list split on commas."""
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @field_validator("DIMENSION_WEIGHTS")
    @classmethod
    def _weights_must_be_between_0_and_1(cls, v: Dict[str, float]) -> Dict[str, float]:
        for name, weight in v.items():
            if not 0.0 <= weight <= 1.0:
                raise ValueError(f"Weight for {name} must be between 0 and 1, got {weight}")
        return v

    @model_validator(mode="after")
    def _weights_must_sum_to_one(self) -> "Settings":
        total = sum(self.DIMENSION_WEIGHTS.values())
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"DIMENSION_WEIGHTS must sum to 1, got {total}")
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached, validated ``Settings`` instance.

    Using ``@lru_cache`` guarantees the .env file is read and validated
    exactly once per process lifetime.  Import this function anywhere you
    need access to configuration::

        from app.config import get_settings
        settings = get_settings()
    """
    return Settings()
