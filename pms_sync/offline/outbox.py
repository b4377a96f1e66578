"""
Outbox Queue.

Ordered, domain-partitioned list of mutations that could not reach the API.
The LocalCache is the source of truth: every operation re-reads the
persisted list, so a queue survives restarts and sees writes from other
processes sharing the cache file.

Delivery is at-least-once. An entry leaves the queue only after its replay
was acknowledged; the first failure stops the domain and keeps the rest.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List

from pms_sync.offline.enums import SyncDomain
from pms_sync.offline.exceptions import AuthenticationError, CacheConflictError
from pms_sync.offline.local_cache import LocalCache
from pms_sync.offline.models import OutboxEntry
from pms_sync.offline.results import DrainReport

logger = logging.getLogger(__name__)

OUTBOX_KEY_PREFIX = "outbox_"


class ReplayDecision(str, Enum):
    """What a replay callback decided about one entry."""

    ACKNOWLEDGED = "acknowledged"  # server accepted it; remove
    DROPPED = "dropped"  # unrecoverable (e.g. stale reference past its retry budget); remove
    FAILED = "failed"  # keep it and stop draining the domain


ReplayFn = Callable[[OutboxEntry], Awaitable[ReplayDecision]]
BatchReplayFn = Callable[[List[OutboxEntry]], Awaitable[bool]]
ListMutator = Callable[[List[OutboxEntry]], List[OutboxEntry]]


def outbox_key(domain: SyncDomain) -> str:
    return f"{OUTBOX_KEY_PREFIX}{domain}"


class OutboxQueue:
    """
    Persistent FIFO outbox, one partition per SyncDomain.

    Args:
        cache: LocalCache holding the persisted lists.
        cas_max_retries: Compare-and-swap attempts per write.
    """

    def __init__(self, cache: LocalCache, cas_max_retries: int = 5) -> None:
        self._cache = cache
        self._cas_max_retries = cas_max_retries
        self._drain_locks: Dict[SyncDomain, asyncio.Lock] = {}

    # =========================================================================
    # Persistence
    # =========================================================================

    def _load(self, domain: SyncDomain) -> tuple[List[OutboxEntry], int]:
        raw, version = self._cache.read_versioned(outbox_key(domain))
        return [OutboxEntry.model_validate(item) for item in raw or []], version

    def _mutate(self, domain: SyncDomain, mutator: ListMutator) -> List[OutboxEntry]:
        """Read-modify-write the domain list under compare-and-swap."""
        key = outbox_key(domain)
        for _ in range(self._cas_max_retries):
            entries, version = self._load(domain)
            updated = mutator(list(entries))
            payload = [entry.model_dump(mode="json") for entry in updated]
            if self._cache.compare_and_swap(key, version, payload):
                return updated
        raise CacheConflictError(
            f"Outbox '{domain}' changed concurrently {self._cas_max_retries} times",
            key=key,
        )

    def _lock_for(self, domain: SyncDomain) -> asyncio.Lock:
        if domain not in self._drain_locks:
            self._drain_locks[domain] = asyncio.Lock()
        return self._drain_locks[domain]

    # =========================================================================
    # Queue Operations
    # =========================================================================

    def enqueue(self, entry: OutboxEntry) -> None:
        """Append ``entry`` to its domain and persist immediately."""
        entries = self._mutate(entry.domain, lambda current: current + [entry])
        logger.info(
            f"Queued {entry.operation} for '{entry.domain}' "
            f"(record={entry.record_id}, queued={len(entries)})"
        )

    def entries(self, domain: SyncDomain) -> List[OutboxEntry]:
        """Queued entries for ``domain`` in replay order."""
        entries, _ = self._load(domain)
        return entries

    def is_empty(self, domain: SyncDomain) -> bool:
        return not self.entries(domain)

    def pending_count(self) -> int:
        return sum(len(self.entries(domain)) for domain in SyncDomain)

    def replace(self, entry: OutboxEntry) -> None:
        """Swap a queued entry (matched by entry_id) for an updated copy."""
        def _swap(current: List[OutboxEntry]) -> List[OutboxEntry]:
            return [entry if item.entry_id == entry.entry_id else item for item in current]

        self._mutate(entry.domain, _swap)

    def rewrite_record_id(self, domain: SyncDomain, old_id: str, new_id: str) -> None:
        """Point queued entries that reference ``old_id`` at ``new_id``."""
        def _rewrite(current: List[OutboxEntry]) -> List[OutboxEntry]:
            return [
                item.model_copy(update={"record_id": new_id}) if item.record_id == old_id else item
                for item in current
            ]

        self._mutate(domain, _rewrite)

    def _remove(self, domain: SyncDomain, entry_ids: set[str]) -> None:
        self._mutate(
            domain,
            lambda current: [item for item in current if item.entry_id not in entry_ids],
        )

    def clear(self, domain: SyncDomain) -> None:
        self._mutate(domain, lambda current: [])

    # =========================================================================
    # Draining
    # =========================================================================

    async def drain(self, domain: SyncDomain, replay_fn: ReplayFn) -> DrainReport:
        """
        Replay queued entries of ``domain`` in FIFO order.

        Only the entries present when the drain starts are replayed; entries
        enqueued meanwhile stay behind them for the next drain.

        Args:
            domain: Partition to drain.
            replay_fn: Async callback returning a ReplayDecision.

        Returns:
            DrainReport with replay counts and the first failure, if any.
        """
        report = DrainReport(domain=domain)

        async with self._lock_for(domain):
            batch = self.entries(domain)
            if batch:
                logger.info(f"Draining {len(batch)} queued '{domain}' entries")

            for entry in batch:
                # Re-read: an earlier replay may have remapped this entry's record id
                current = next(
                    (item for item in self.entries(domain) if item.entry_id == entry.entry_id),
                    None,
                )
                if current is None:
                    continue

                try:
                    decision = await replay_fn(current)
                except AuthenticationError:
                    raise
                except Exception as e:
                    logger.exception(f"Replay of {current.operation} on '{domain}' raised: {e}")
                    decision = ReplayDecision.FAILED
                    report.error = f"{type(e).__name__}: {e}"

                if decision is ReplayDecision.FAILED:
                    report.error = report.error or f"{current.operation} {current.record_id or ''}".strip()
                    break

                self._remove(domain, {current.entry_id})
                if decision is ReplayDecision.DROPPED:
                    report.dropped += 1
                else:
                    report.replayed += 1

            report.remaining = len(self.entries(domain))

        if report.error:
            logger.warning(
                f"Drain of '{domain}' stopped after {report.replayed} entries: "
                f"{report.error} ({report.remaining} still queued)"
            )
        return report

    async def drain_batch(self, domain: SyncDomain, batch_fn: BatchReplayFn) -> DrainReport:
        """
        Replay the whole in-flight batch of ``domain`` in a single call.

        Used with bulk ``/sync`` endpoints; the batch is removed only if the
        call is acknowledged.
        """
        report = DrainReport(domain=domain)

        async with self._lock_for(domain):
            batch = self.entries(domain)
            if batch:
                try:
                    acknowledged = await batch_fn(batch)
                except AuthenticationError:
                    raise
                except Exception as e:
                    logger.exception(f"Bulk replay of '{domain}' raised: {e}")
                    acknowledged = False
                    report.error = f"{type(e).__name__}: {e}"

                if acknowledged:
                    self._remove(domain, {entry.entry_id for entry in batch})
                    report.replayed = len(batch)
                else:
                    report.error = report.error or f"bulk sync of {len(batch)} entries failed"

            report.remaining = len(self.entries(domain))

        return report
