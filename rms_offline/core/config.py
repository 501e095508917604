"""Client configuration using pydantic-settings.

Environment variables are read through the settings object only, never
with os.getenv() in the modules that use them.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Offline data layer settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars
    )

    # Local store - SQLite file next to the client, override via env
    database_url: str = "sqlite+aiosqlite:///./data/rms_offline.db"

    # Remote backend
    api_base_url: str = "http://localhost:3001/api/v1"
    api_token: Optional[str] = None
    request_timeout_seconds: float = 15.0

    # Active tenant for this client
    tenant_id: Optional[str] = None

    # ==========================================================================
    # Synchronizer
    # ==========================================================================
    sync_strategy: Literal["queued", "direct"] = "queued"
    sync_interval_seconds: float = 30.0
    push_concurrency: int = 4
    max_sync_attempts: int = 5
    retry_base_delay_seconds: float = 2.0
    retry_max_delay_seconds: float = 300.0

    # ==========================================================================
    # Realtime change channel
    # ==========================================================================
    realtime_enabled: bool = True
    realtime_url: Optional[str] = None
    realtime_reconnect_base_seconds: float = 1.0
    realtime_reconnect_max_seconds: float = 30.0
    realtime_max_reconnect_attempts: int = 5

    # ==========================================================================
    # Ephemeral cache
    # ==========================================================================
    cache_default_ttl_seconds: float = 300.0  # 5 minutes
    cache_max_size: int = 1000
    cache_cleanup_interval_seconds: float = 60.0

    # Logging
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @field_validator(
        "push_concurrency",
        "max_sync_attempts",
        "realtime_max_reconnect_attempts",
        "cache_max_size",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator(
        "request_timeout_seconds",
        "sync_interval_seconds",
        "cache_default_ttl_seconds",
        "cache_cleanup_interval_seconds",
    )
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than 0")
        return v

    @model_validator(mode="after")
    def validate_backoff(self) -> "Settings":
        """Backoff caps must not be below their base delays."""
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError(
                "retry_max_delay_seconds must be >= retry_base_delay_seconds"
            )
        if self.realtime_reconnect_max_seconds < self.realtime_reconnect_base_seconds:
            raise ValueError(
                "realtime_reconnect_max_seconds must be >= realtime_reconnect_base_seconds"
            )
        return self

    @property
    def realtime_configured(self) -> bool:
        return bool(self.realtime_enabled and self.realtime_url and self.tenant_id)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
