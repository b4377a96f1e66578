"""Core module - settings, logging and HTTP client lifecycle."""
from pms_sync.core.config import SyncSettings, get_sync_settings
from pms_sync.core.http_client import HttpClientManager, create_standalone_http_client
from pms_sync.core.logging_config import SensitiveDataFormatter, mask_sensitive, setup_logging

__all__ = [
    "SyncSettings",
    "get_sync_settings",
    "HttpClientManager",
    "create_standalone_http_client",
    "SensitiveDataFormatter",
    "mask_sensitive",
    "setup_logging",
]
