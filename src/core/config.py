"""Configuration management for the lead conversion engine.

All configuration is loaded from environment variables and/or .env file.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Project root detection
PROJECT_ROOT = Path(__file__).resolve().parents[2]
ENV_FILE = PROJECT_ROOT / ".env"

DATABASE_FILE = PROJECT_ROOT / "lead_conversion.db"
ABSOLUTE_DATABASE_URL = f"sqlite:///{DATABASE_FILE.as_posix()}"


def _resolve_database_url(url: str) -> str:
    """
    Convert relative SQLite paths to absolute paths based on PROJECT_ROOT.

    In-memory URLs and non-SQLite URLs are returned unchanged.
    """
    if not url.startswith("sqlite:///"):
        return url

    path_part = url.replace("sqlite:///", "")
    if path_part == ":memory:" or not path_part:
        return url

    if path_part.startswith("./") or (not path_part.startswith("/") and ":" not in path_part):
        if path_part.startswith("./"):
            path_part = path_part[2:]
        absolute_path = PROJECT_ROOT / path_part
        return f"sqlite:///{absolute_path.as_posix()}"

    return url


class Settings(BaseSettings):
    """
    Runtime configuration powered by environment variables and .env overrides.

    All settings can be configured via:
    1. Environment variables (highest priority)
    2. .env file in project root (loaded automatically)
    3. Default values (lowest priority)
    """

    model_config = SettingsConfigDict(
        env_file=ENV_FILE if ENV_FILE.exists() else None,
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Database
    # -------------------------------------------------------------------------
    database_url: str = Field(
        default=ABSOLUTE_DATABASE_URL,
        alias="DATABASE_URL",
        description="SQLAlchemy connection string for the conversion store.",
    )
    db_pool_size: int = Field(default=5, alias="DB_POOL_SIZE", ge=1)
    db_max_overflow: int = Field(default=10, alias="DB_MAX_OVERFLOW", ge=0)
    db_pool_timeout: int = Field(default=30, alias="DB_POOL_TIMEOUT", ge=1)

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------
    score_expiry_hours: int = Field(default=24, alias="SCORE_EXPIRY_HOURS", ge=1)

    # -------------------------------------------------------------------------
    # Attribution
    # -------------------------------------------------------------------------
    default_attribution_model: str = Field(
        default="position_based", alias="DEFAULT_ATTRIBUTION_MODEL"
    )
    attribution_recent_days: int = Field(default=30, alias="ATTRIBUTION_RECENT_DAYS", ge=1)

    # -------------------------------------------------------------------------
    # Result cache
    # -------------------------------------------------------------------------
    cache_ttl_seconds: int = Field(default=1800, alias="CACHE_TTL_SECONDS", ge=1)
    cache_cleanup_minutes: int = Field(default=5, alias="CACHE_CLEANUP_MINUTES", ge=1)

    # -------------------------------------------------------------------------
    # Retries (event log + stage persistence)
    # -------------------------------------------------------------------------
    event_log_max_attempts: int = Field(default=3, alias="EVENT_LOG_MAX_ATTEMPTS", ge=1)
    stage_update_max_attempts: int = Field(default=3, alias="STAGE_UPDATE_MAX_ATTEMPTS", ge=1)
    retry_min_wait_seconds: float = Field(default=0.5, alias="RETRY_MIN_WAIT_SECONDS", ge=0)
    retry_max_wait_seconds: float = Field(default=8.0, alias="RETRY_MAX_WAIT_SECONDS", ge=0)

    # -------------------------------------------------------------------------
    # Realtime channel
    # -------------------------------------------------------------------------
    realtime_enabled: bool = Field(default=False, alias="REALTIME_ENABLED")
    realtime_url: Optional[str] = Field(default=None, alias="REALTIME_URL")
    realtime_reconnect_base_seconds: float = Field(
        default=5.0, alias="REALTIME_RECONNECT_BASE_SECONDS", ge=0
    )
    realtime_reconnect_max_seconds: float = Field(
        default=60.0, alias="REALTIME_RECONNECT_MAX_SECONDS", ge=0
    )
    realtime_max_reconnect_attempts: int = Field(
        default=5, alias="REALTIME_MAX_RECONNECT_ATTEMPTS", ge=1
    )
    realtime_heartbeat_seconds: int = Field(default=30, alias="REALTIME_HEARTBEAT_SECONDS", ge=1)

    # -------------------------------------------------------------------------
    # Background work
    # -------------------------------------------------------------------------
    ingestion_workers: int = Field(default=4, alias="INGESTION_WORKERS", ge=1)
    export_workers: int = Field(default=2, alias="EXPORT_WORKERS", ge=1)

    # -------------------------------------------------------------------------
    # Application
    # -------------------------------------------------------------------------
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="text", alias="LOG_FORMAT")  # "text" or "json"
    log_file: Optional[str] = Field(default=None, alias="LOG_FILE")
    environment: str = Field(default="local", alias="ENVIRONMENT")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Ensure log format is valid."""
        lower = v.lower()
        if lower not in {"text", "json"}:
            raise ValueError("log_format must be 'text' or 'json'")
        return lower

    @model_validator(mode="after")
    def validate_retry_window(self) -> "Settings":
        """The backoff ceiling may not sit below its floor."""
        if self.retry_max_wait_seconds < self.retry_min_wait_seconds:
            raise ValueError("retry_max_wait_seconds must be >= retry_min_wait_seconds")
        if self.realtime_reconnect_max_seconds < self.realtime_reconnect_base_seconds:
            raise ValueError(
                "realtime_reconnect_max_seconds must be >= realtime_reconnect_base_seconds"
            )
        return self

    @model_validator(mode="after")
    def validate_realtime_config(self) -> "Settings":
        """A realtime URL is required once the channel is switched on."""
        if self.realtime_enabled and not self.realtime_url:
            raise ValueError("REALTIME_URL is required when REALTIME_ENABLED=true")
        return self

    @model_validator(mode="after")
    def resolve_database_url(self) -> "Settings":
        """Convert relative SQLite paths to absolute paths."""
        self.database_url = _resolve_database_url(self.database_url)
        return self

    def is_realtime_enabled(self) -> bool:
        """Check if the realtime channel is enabled AND configured."""
        return self.realtime_enabled and bool(self.realtime_url)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Settings are loaded once and cached. To reload settings,
    call `get_settings.cache_clear()` first.

    Returns:
        Settings object with all configuration.
    """
    return Settings()


def reload_settings() -> Settings:
    """
    Clear settings cache and reload from environment.

    Useful for testing or after modifying .env file.
    """
    get_settings.cache_clear()
    return get_settings()
