"""Application configuration settings."""
from __future__ import annotations

import os
from functools import lru_cache

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Execution environment: "dev" | "staging" | "prod"
ENV = os.getenv("APP_ENV", "dev").lower()

# Legacy admin key, only honoured in dev
DEV_API_KEY = os.getenv("DEV_API_KEY") or os.getenv("API_KEY") or "dev-secret-key"
DEV_API_KEY_ALLOWED = ENV in {"dev", "local", "test"}


class Settings(BaseSettings):
    """Environment configuration for the payment ledger service."""

    app_env: str = ENV
    database_url: str = "sqlite:///payledger.db"
    LOG_LEVEL: str = "INFO"
    SECRET_KEY: str = "change-me"
    DEV_API_KEY: str | None = Field(
        default=DEV_API_KEY,
        validation_alias=AliasChoices("DEV_API_KEY", "API_KEY"),
    )
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = True
    ALLOW_DB_CREATE_ALL: bool = False

    # --- Redis cache -------------------------------------------------------
    redis_url: str = "redis://localhost:6379/0"
    REDIS_SOCKET_TIMEOUT_SECONDS: float = 2.0
    REDIS_CONNECT_TIMEOUT_SECONDS: float = 2.0
    CACHE_TTL_USER_SECONDS: int = 3600
    CACHE_TTL_SESSION_SECONDS: int = 86400
    CACHE_TTL_PAYMENT_HISTORY_SECONDS: int = 7200
    CACHE_TTL_WEBHOOK_EVENT_SECONDS: int = 86400
    CACHE_TTL_WEBHOOK_CLAIM_SECONDS: int = 60

    # --- Razorpay gateway ----------------------------------------------------
    razorpay_key_id: str | None = None
    razorpay_key_secret: str | None = None
    razorpay_webhook_secret: str | None = Field(
        default=None,
        validation_alias=AliasChoices("RAZORPAY_WEBHOOK_SECRET", "WEBHOOK_SECRET"),
    )
    razorpay_webhook_secret_next: str | None = None
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    SUPPORTED_CURRENCY: str = "INR"

    # --- Scheduler / reconciliation ---------------------------------------------
    SCHEDULER_ENABLED: bool = False
    RECONCILIATION_INTERVAL_MINUTES: int = 15
    RECONCILIATION_MIN_AGE_MINUTES: int = 10
    RECONCILIATION_BATCH_SIZE: int = 50
    RECONCILIATION_LOOKBACK_HOURS: int = 24

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator(
        "razorpay_key_id",
        "razorpay_key_secret",
        "razorpay_webhook_secret",
        "razorpay_webhook_secret_next",
    )
    @classmethod
    def _strip_empty_secret(cls, value: str | None) -> str | None:
        """Normalise empty secrets to ``None`` for easier validation."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None


class AppInfo(BaseModel):
    name: str = "payledger"
    version: str = "0.1.0"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return settings


__all__ = [
    "ENV",
    "DEV_API_KEY",
    "DEV_API_KEY_ALLOWED",
    "Settings",
    "AppInfo",
    "settings",
    "get_settings",
]
