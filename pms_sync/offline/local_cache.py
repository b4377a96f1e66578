"""
Local Cache.

Persistent key-value store for domain snapshots, outbox lists and the
appraisal draft. Backed by SQLite through SQLAlchemy so that it survives
restarts and is scoped to one profile directory.

Every entry carries a version counter. ``compare_and_swap`` writes only if
the version is unchanged since it was read, which lets two processes share
one cache file without silently overwriting each other's outbox.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional, Tuple

from sqlalchemy import DateTime, Integer, String, Text, create_engine, delete, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from pms_sync.core.config import SyncSettings, get_sync_settings

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheBase(DeclarativeBase):
    """Declarative base for the local cache schema."""
    pass


class CacheEntry(CacheBase):
    """One cached value, JSON-encoded."""

    __tablename__ = "cache_entries"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
    )


def _create_engine(path: str) -> Engine:
    if path == MEMORY_PATH:
        # One shared connection, otherwise every session sees an empty database
        return create_engine(
            "sqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

    Path(path).expanduser().parent.mkdir(parents=True, exist_ok=True)
    return create_engine(f"sqlite:///{Path(path).expanduser()}")


class LocalCache:
    """
    Synchronous key-value cache.

    No cross-key transactions: each key is a self-contained snapshot.

    Args:
        path: SQLite file path, or ``":memory:"`` for a throwaway cache.
        engine: Pre-built engine (overrides ``path``).
    """

    def __init__(self, path: str = MEMORY_PATH, engine: Optional[Engine] = None) -> None:
        self._engine = engine or _create_engine(path)
        CacheBase.metadata.create_all(self._engine)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False)
        logger.debug(f"Local cache ready ({path})")

    @classmethod
    def from_settings(cls, settings: Optional[SyncSettings] = None) -> "LocalCache":
        """Open the cache file configured by ``PMS_SYNC_CACHE_PATH``."""
        settings = settings or get_sync_settings()
        return cls(path=settings.cache_path)

    @staticmethod
    def _encode(value: Any) -> str:
        return json.dumps(value, default=str)

    def _session(self) -> Session:
        return self._session_factory()

    # =========================================================================
    # Basic Operations
    # =========================================================================

    def read(self, key: str) -> Optional[Any]:
        """Return the decoded value for ``key``, or None if absent."""
        value, _ = self.read_versioned(key)
        return value

    def write(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""
        encoded = self._encode(value)
        now = _utcnow()
        stmt = sqlite_insert(CacheEntry.__table__).values(
            key=key, value=encoded, version=1, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[CacheEntry.key],
            set_={
                "value": encoded,
                "version": CacheEntry.version + 1,
                "updated_at": now,
            },
        )
        with self._engine.begin() as conn:
            conn.execute(stmt)

    def remove(self, key: str) -> None:
        """Delete ``key``; missing keys are ignored."""
        with self._engine.begin() as conn:
            conn.execute(delete(CacheEntry.__table__).where(CacheEntry.key == key))

    def keys(self, prefix: str = "") -> List[str]:
        """List stored keys, optionally filtered by prefix."""
        query = select(CacheEntry.key).order_by(CacheEntry.key)
        if prefix:
            query = query.where(CacheEntry.key.startswith(prefix, autoescape=True))
        with self._session() as session:
            return list(session.execute(query).scalars())

    # =========================================================================
    # Versioned Access
    # =========================================================================

    def read_versioned(self, key: str) -> Tuple[Optional[Any], int]:
        """
        Return ``(value, version)``.

        Version 0 means the key does not exist.
        """
        with self._session() as session:
            entry = session.get(CacheEntry, key)
            if entry is None:
                return None, 0
            return json.loads(entry.value), entry.version

    def compare_and_swap(self, key: str, expected_version: int, value: Any) -> bool:
        """
        Write ``value`` only if ``key`` is still at ``expected_version``.

        Returns:
            True if the write happened, False if another writer got there first.
        """
        encoded = self._encode(value)
        now = _utcnow()

        with self._engine.begin() as conn:
            if expected_version == 0:
                stmt = sqlite_insert(CacheEntry.__table__).values(
                    key=key, value=encoded, version=1, updated_at=now
                ).on_conflict_do_nothing(index_elements=[CacheEntry.key])
            else:
                stmt = (
                    update(CacheEntry.__table__)
                    .where(CacheEntry.key == key, CacheEntry.version == expected_version)
                    .values(value=encoded, version=expected_version + 1, updated_at=now)
                )
            result = conn.execute(stmt)

        swapped = result.rowcount == 1
        if not swapped:
            logger.debug(f"CAS conflict on '{key}' (expected version {expected_version})")
        return swapped

    def close(self) -> None:
        """Dispose the engine and release the database file."""
        self._engine.dispose()
