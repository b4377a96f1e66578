"""
Logging Configuration Module.

Root logger setup for hosts embedding the sync layer: a rotating log file
plus console output, both passed through SensitiveDataFormatter so session
tokens, phone numbers and emails from sync payloads never reach disk.
"""

import logging
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional, Pattern, Tuple, Union

from pms_sync.core.config import SyncSettings, get_sync_settings

LOG_FILENAME = "pms_sync.log"
MAX_BYTES = 5 * 1024 * 1024  # 5 MB
BACKUP_COUNT = 3
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Libraries whose INFO output drowns sync traces
QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")

# Applied in order; the bearer rule must run before the JWT rule
SENSITIVE_PATTERNS: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"(Bearer\s+)([A-Za-z0-9\-_\.]+)", re.IGNORECASE), r"\1***"),
    (
        re.compile(
            r"((?:password|secret|token|cookie)['\"]?\s*[:=]\s*['\"]?)([^'\"\s&,}]+)",
            re.IGNORECASE,
        ),
        r"\1***",
    ),
    (
        re.compile(r"\b(eyJ[A-Za-z0-9\-_]+\.eyJ[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+)\b"),
        r"[JWT:***]",
    ),
    # Contact numbers keep their last 3 digits
    (
        re.compile(r"(['\"]?phone['\"]?\s*[:=]\s*['\"]?)\+?[\d\s\-]{4,}(\d{3})"),
        r"\1***\2",
    ),
    (
        re.compile(r"\b([a-zA-Z0-9._%+-]{2})([a-zA-Z0-9._%+-]*)(@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,})\b"),
        r"\1***\3",
    ),
]


def mask_sensitive(text: str) -> str:
    """Apply every masking rule to ``text``."""
    for pattern, replacement in SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class SensitiveDataFormatter(logging.Formatter):
    """
    Formatter that masks the fully rendered record, traceback included.

    Masks:
    - Session tokens and Authorization headers
    - Phone numbers from contact updates
    - Email addresses (first two characters kept)
    """

    def format(self, record: logging.LogRecord) -> str:
        return mask_sensitive(super().format(record))


def get_log_path(log_dir: Optional[Path] = None) -> Path:
    """Log file path, creating ``log_dir`` (default ``./logs``) if needed."""
    logs_dir = Path(log_dir) if log_dir is not None else Path.cwd() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir / LOG_FILENAME


def _resolve_level(log_level: Union[int, str]) -> int:
    if isinstance(log_level, int):
        return log_level
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")
    return level


def setup_logging(
    log_level: Union[int, str, None] = None,
    log_dir: Optional[Path] = None,
    settings: Optional[SyncSettings] = None,
) -> Path:
    """
    Configure root logging with rotation and masking.

    Args:
        log_level: Level name or number; defaults to ``settings.log_level``.
        log_dir: Directory for the rotating log file.
        settings: Sync settings; loaded from the environment if omitted.

    Returns:
        Path of the log file.
    """
    if log_level is None:
        log_level = (settings or get_sync_settings()).log_level
    level = _resolve_level(log_level)
    log_file_path = get_log_path(log_dir)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Replace handlers from an earlier call instead of stacking them
    root_logger.handlers.clear()

    formatter = SensitiveDataFormatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    file_handler = RotatingFileHandler(
        filename=str(log_file_path),
        maxBytes=MAX_BYTES,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    console_handler = logging.StreamHandler(sys.stdout)
    for handler in (file_handler, console_handler):
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.info(f"Logging initialized at {logging.getLevelName(level)}. Log file: {log_file_path}")
    return log_file_path
