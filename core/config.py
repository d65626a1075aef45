"""
Observer configuration using Pydantic settings.

Usage:
    from core.config import get_settings
    settings = get_settings()

All values can be overridden through environment variables or a .env file.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Observer settings loaded from environment variables and .env file.

    Groups:
        - Queue / cursor store (Redis)
        - Registry change log and analysis result store (CouchDB)
        - Enqueue retry policy
        - Realtime watcher reconnect policy
        - Staleness scanner schedule
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # App settings
    app_name: str = "Package Observer"
    debug: bool = Field(default=False)
    log_level: str = Field(default="WARNING", validation_alias="LOG_LEVEL")

    # Redis (analysis queue + realtime cursor)
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    queue_key: str = Field(default="analysis:queue", validation_alias="QUEUE_KEY")
    cursor_key: str = Field(default="observer:realtime:seq", validation_alias="CURSOR_KEY")

    # Registry change log
    registry_url: str = Field(
        default="https://replicate.npmjs.com/registry", validation_alias="REGISTRY_URL"
    )
    registry_timeout: int = Field(default=60, validation_alias="REGISTRY_TIMEOUT")
    changes_heartbeat_ms: int = Field(default=30000, validation_alias="CHANGES_HEARTBEAT_MS")

    # Analysis result store
    results_url: str = Field(default="http://localhost:5984/npms", validation_alias="RESULTS_URL")
    results_view: str = Field(
        default="_design/npms-analyzer/_view/packages-evaluation",
        validation_alias="RESULTS_VIEW",
    )
    results_user: Optional[str] = Field(default=None, validation_alias="RESULTS_USER")
    results_password: Optional[str] = Field(default=None, validation_alias="RESULTS_PASSWORD")

    # Realtime watcher
    default_seq: int = Field(default=0, validation_alias="DEFAULT_SEQ")
    realtime_priority: int = Field(default=1, validation_alias="REALTIME_PRIORITY")
    reconnect_base_delay: float = Field(default=1.0, validation_alias="RECONNECT_BASE_DELAY")
    reconnect_max_delay: float = Field(default=60.0, validation_alias="RECONNECT_MAX_DELAY")
    reconnect_max_attempts: Optional[int] = Field(
        default=None, validation_alias="RECONNECT_MAX_ATTEMPTS"
    )

    # Enqueue retry policy
    enqueue_max_attempts: int = Field(default=10, ge=1, validation_alias="ENQUEUE_MAX_ATTEMPTS")
    enqueue_backoff_base: float = Field(default=1.0, ge=0, validation_alias="ENQUEUE_BACKOFF_BASE")
    enqueue_backoff_factor: float = Field(
        default=2.0, ge=1, validation_alias="ENQUEUE_BACKOFF_FACTOR"
    )
    enqueue_backoff_max: float = Field(default=60.0, ge=0, validation_alias="ENQUEUE_BACKOFF_MAX")

    # Staleness scanner
    stale_priority: int = Field(default=0, validation_alias="STALE_PRIORITY")
    stale_after_days: int = Field(default=15, ge=1, validation_alias="STALE_AFTER_DAYS")
    scan_interval_seconds: int = Field(default=3600, ge=1, validation_alias="SCAN_INTERVAL_SECONDS")
    scan_page_size: int = Field(default=500, ge=1, validation_alias="SCAN_PAGE_SIZE")

    # Supervisor
    stats_interval_seconds: int = Field(default=60, ge=1, validation_alias="STATS_INTERVAL_SECONDS")
    service_wait_max_delay: float = Field(default=30.0, validation_alias="SERVICE_WAIT_MAX_DELAY")

    @field_validator("default_seq")
    @classmethod
    def validate_default_seq(cls, v: int) -> int:
        """The default seq is a position in the change log, never negative."""
        if v < 0:
            raise ValueError("DEFAULT_SEQ must be a positive integer")
        return v

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.upper()
        # Accept the short "warn" spelling
        if level == "WARN":
            level = "WARNING"
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown LOG_LEVEL: {v}")
        return level

    @model_validator(mode="after")
    def validate_priorities(self) -> "Settings":
        from packages.shared.enums import Priority

        valid = {p.value for p in Priority}
        for field in ("realtime_priority", "stale_priority"):
            if getattr(self, field) not in valid:
                raise ValueError(f"{field.upper()} must be one of {sorted(valid)}")
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()


__all__ = ["Settings", "get_settings"]
