"""
Offline Sync Configuration.

Manages environment variables for the offline synchronization layer.
Uses prefix PMS_SYNC_ to avoid conflicts with the rest of the portal.
"""

from functools import lru_cache
from typing import Annotated, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncSettings(BaseSettings):
    """
    Sync-layer settings loaded from environment variables.

    All variables use the PMS_SYNC_ prefix for isolation.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,  # Allow both 'api_base_url' and 'PMS_SYNC_API_BASE_URL'
    )

    # Remote API
    api_base_url: Annotated[
        str,
        Field(
            default="http://localhost:5000/api",
            description="Base URL of the performance-management REST API",
            validation_alias="PMS_SYNC_API_BASE_URL",
        ),
    ] = "http://localhost:5000/api"

    request_timeout_seconds: Annotated[
        float,
        Field(
            default=15.0,
            description="HTTP timeout for every gateway request",
            validation_alias="PMS_SYNC_REQUEST_TIMEOUT_SECONDS",
        ),
    ] = 15.0

    company_name: Annotated[
        str,
        Field(
            default="Shrirang Automation and Controls",
            description="Company stamped on goals created from the dashboard",
            validation_alias="PMS_SYNC_COMPANY_NAME",
        ),
    ] = "Shrirang Automation and Controls"

    # Local storage
    cache_path: Annotated[
        str,
        Field(
            default=".pms_sync/cache.sqlite3",
            description="SQLite file backing the local cache (':memory:' for ephemeral)",
            validation_alias="PMS_SYNC_CACHE_PATH",
        ),
    ] = ".pms_sync/cache.sqlite3"

    cas_max_retries: Annotated[
        int,
        Field(
            default=5,
            ge=1,
            description="Compare-and-swap attempts before a cache write gives up",
            validation_alias="PMS_SYNC_CAS_MAX_RETRIES",
        ),
    ] = 5

    # Draft reconciliation
    draft_debounce_ms: Annotated[
        int,
        Field(
            default=800,
            ge=0,
            description="Quiet period before an edited appraisal draft is saved",
            validation_alias="PMS_SYNC_DRAFT_DEBOUNCE_MS",
        ),
    ] = 800

    # Outbox replay
    stale_entry_max_attempts: Annotated[
        int,
        Field(
            default=3,
            ge=1,
            description="Replays answered with 404 before an outbox entry is dropped",
            validation_alias="PMS_SYNC_STALE_ENTRY_MAX_ATTEMPTS",
        ),
    ] = 3

    bulk_replay: Annotated[
        bool,
        Field(
            default=False,
            description="Replay queued queries/feedback through the bulk /sync endpoints",
            validation_alias="PMS_SYNC_BULK_REPLAY",
        ),
    ] = False

    auto_retry_interval_seconds: Annotated[
        float,
        Field(
            default=30.0,
            gt=0,
            description="Delay between automatic sync attempts while offline",
            validation_alias="PMS_SYNC_AUTO_RETRY_INTERVAL_SECONDS",
        ),
    ] = 30.0

    auto_retry_max_attempts: Annotated[
        Optional[int],
        Field(
            default=None,
            description="Cap on automatic sync attempts per offline period (unset = no cap)",
            validation_alias="PMS_SYNC_AUTO_RETRY_MAX_ATTEMPTS",
        ),
    ] = None

    # Logging
    log_level: Annotated[
        str,
        Field(default="INFO", validation_alias="PMS_SYNC_LOG_LEVEL"),
    ] = "INFO"

    @field_validator("api_base_url")
    @classmethod
    def validate_api_base_url(cls, v: str) -> str:
        """Remove trailing slash from api_base_url."""
        return v.rstrip("/")


@lru_cache
def get_sync_settings() -> SyncSettings:
    """
    Get cached sync settings.

    Uses LRU cache to ensure settings are loaded only once.

    Returns:
        SyncSettings: Sync settings instance.
    """
    return SyncSettings()
