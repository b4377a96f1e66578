"""
Sync Coordinator.

Two-mode state machine in front of the RemoteGateway:

    - ONLINE: every operation calls the API first. Success updates memory
      and the LocalCache from the authoritative response. Any non-auth
      failure flips to OFFLINE, queues the mutation and applies it
      optimistically, so the caller sees "pending" rather than an error.
    - OFFLINE: reads come from the LocalCache; mutations are applied
      locally and queued without a network attempt.

``sync_now()`` drains every outbox domain. A clean drain of all domains
returns the coordinator to ONLINE; any failure keeps it OFFLINE with the
failed domain still queued.
"""

import asyncio
import inspect
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, NoReturn, Optional, Type, TypeVar

from pydantic import BaseModel

from pms_sync.core.config import SyncSettings, get_sync_settings
from pms_sync.offline.enums import OutboxOperation, SaveStatus, SyncDomain, SyncMode
from pms_sync.offline.exceptions import AuthenticationError, InvalidInputError
from pms_sync.offline.gateway import RemoteGateway
from pms_sync.offline.local_cache import LocalCache
from pms_sync.offline.models import (
    ContactInfo,
    DomainRecord,
    GoalSummary,
    OutboxEntry,
    PerformanceSnapshot,
    PIPRecord,
    is_temporary_id,
    new_temporary_id,
    summarize_goals,
    utcnow,
)
from pms_sync.offline.outbox import OutboxQueue, ReplayDecision
from pms_sync.offline.results import (
    DashboardSnapshot,
    Err,
    ErrorKind,
    FetchResult,
    GatewayResult,
    MutationResult,
    SyncReport,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
SessionExpiredHandler = Callable[[], Any]

SNAPSHOT_KEYS: Dict[SyncDomain, str] = {
    SyncDomain.GOALS: "offline_goals",
    SyncDomain.QUERIES: "offline_queries",
    SyncDomain.FEEDBACK: "offline_feedback",
    SyncDomain.CONTACT: "offline_contact",
}
PERFORMANCE_KEY = "offline_performance"
PIP_KEY = "offline_pip"

RECORD_DOMAINS = (SyncDomain.GOALS, SyncDomain.QUERIES, SyncDomain.FEEDBACK)
BULK_DOMAINS = (SyncDomain.GOALS, SyncDomain.QUERIES, SyncDomain.FEEDBACK)
CONTACT_PLACEHOLDER = "N/A (Click to Edit)"

SAVED_MESSAGE = "Saved"
PENDING_MESSAGE = "Saved offline, will sync when the connection is restored"


async def end_session(handler: Optional[SessionExpiredHandler], error: Err) -> NoReturn:
    """Notify the session handler and raise AuthenticationError."""
    logger.warning(f"Session rejected by API ({error.status_code}): {error.message}")
    if handler is not None:
        outcome = handler()
        if inspect.isawaitable(outcome):
            await outcome
    raise AuthenticationError(error.message or "Session expired", status_code=error.status_code)


def _require_text(value: Optional[str], field: str, label: str) -> str:
    text = (value or "").strip()
    if not text:
        raise InvalidInputError(f"{label} cannot be empty.", field=field)
    return text


# =============================================================================
# Sync State
# =============================================================================


class SyncState:
    """
    The coordinator's belief about connectivity.

    One instance is owned by a SyncCoordinator and handed to whoever needs
    to read the mode (UI accessors, the draft reconciler).
    """

    def __init__(self, mode: SyncMode = SyncMode.ONLINE) -> None:
        self._mode = mode
        self.last_error: Optional[str] = None
        self.changed_at: datetime = utcnow()

    @property
    def mode(self) -> SyncMode:
        return self._mode

    @property
    def is_online(self) -> bool:
        return self._mode is SyncMode.ONLINE

    @property
    def is_offline(self) -> bool:
        return self._mode is SyncMode.OFFLINE

    def go_offline(self, reason: str = "") -> None:
        self.last_error = reason or self.last_error
        if self._mode is not SyncMode.OFFLINE:
            self._mode = SyncMode.OFFLINE
            self.changed_at = utcnow()
            logger.warning(f"Switched to offline mode: {reason}")

    def go_online(self) -> None:
        self.last_error = None
        if self._mode is not SyncMode.ONLINE:
            self._mode = SyncMode.ONLINE
            self.changed_at = utcnow()
            logger.info("Connection restored, back in online mode")


# =============================================================================
# Coordinator
# =============================================================================


class SyncCoordinator:
    """
    Offline-first front for the employee dashboard.

    Args:
        gateway: RemoteGateway for the signed-in employee.
        cache: LocalCache holding snapshots and the outbox (opened at
            ``settings.cache_path`` if omitted).
        outbox: OutboxQueue (built on ``cache`` if omitted).
        state: Shared SyncState (a fresh ONLINE state if omitted).
        settings: Sync settings; loaded from the environment if omitted.
        on_session_expired: Called (sync or async) on 401/403 before
            AuthenticationError is raised.
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        cache: Optional[LocalCache] = None,
        outbox: Optional[OutboxQueue] = None,
        state: Optional[SyncState] = None,
        settings: Optional[SyncSettings] = None,
        on_session_expired: Optional[SessionExpiredHandler] = None,
    ) -> None:
        self._settings = settings or get_sync_settings()
        self._gateway = gateway
        self._cache = cache or LocalCache.from_settings(self._settings)
        self._outbox = outbox or OutboxQueue(self._cache, cas_max_retries=self._settings.cas_max_retries)
        self._state = state or SyncState()
        self._on_session_expired = on_session_expired
        self._retry_task: Optional[asyncio.Task] = None

        self._records: Dict[SyncDomain, List[DomainRecord]] = {
            domain: self._read_records(domain) for domain in RECORD_DOMAINS
        }

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def mode(self) -> SyncMode:
        return self._state.mode

    @property
    def outbox(self) -> OutboxQueue:
        return self._outbox

    @property
    def goals(self) -> List[DomainRecord]:
        return list(self._records[SyncDomain.GOALS])

    @property
    def queries(self) -> List[DomainRecord]:
        return list(self._records[SyncDomain.QUERIES])

    @property
    def feedback(self) -> List[DomainRecord]:
        return list(self._records[SyncDomain.FEEDBACK])

    @property
    def pending_count(self) -> int:
        return self._outbox.pending_count()

    # =========================================================================
    # Local State
    # =========================================================================

    def _read_records(self, domain: SyncDomain) -> List[DomainRecord]:
        raw = self._cache.read(SNAPSHOT_KEYS[domain]) or []
        return [DomainRecord.model_validate(item) for item in raw]

    def _store_records(self, domain: SyncDomain, records: List[DomainRecord]) -> None:
        self._records[domain] = records
        self._cache.write(
            SNAPSHOT_KEYS[domain], [record.model_dump(mode="json") for record in records]
        )

    def _find_record(self, domain: SyncDomain, record_id: str) -> Optional[DomainRecord]:
        return next((r for r in self._records[domain] if r.id == record_id), None)

    def _replace_record(
        self, domain: SyncDomain, record_id: str, record: Optional[DomainRecord]
    ) -> None:
        """Swap the record with ``record_id`` for ``record`` (None removes it)."""
        updated: List[DomainRecord] = []
        for item in self._records[domain]:
            if item.id != record_id:
                updated.append(item)
            elif record is not None:
                updated.append(record)
        self._store_records(domain, updated)

    def _prepend_record(self, domain: SyncDomain, record: DomainRecord) -> None:
        self._store_records(
            domain, [record] + [r for r in self._records[domain] if r.id != record.id]
        )

    def _has_queued(self, domain: SyncDomain, record_id: str, exclude_entry: str = "") -> bool:
        return any(
            entry.record_id == record_id and entry.entry_id != exclude_entry
            for entry in self._outbox.entries(domain)
        )

    def _find_goal(self, goal_id: str) -> DomainRecord:
        record = self._find_record(SyncDomain.GOALS, goal_id) if goal_id else None
        if record is None:
            raise InvalidInputError(f"Unknown goal '{goal_id}'", field="goal_id")
        return record

    def _read_snapshot(self, key: str, model: Type[ModelT]) -> Optional[ModelT]:
        cached = self._cache.read(key)
        return model.model_validate(cached) if cached is not None else None

    # =========================================================================
    # Remote Attempts
    # =========================================================================

    async def _attempt(
        self,
        call: Callable[[], Awaitable[GatewayResult[Any]]],
        not_found_ok: bool = False,
    ) -> Optional[GatewayResult[Any]]:
        """
        Call the API if online.

        Returns None when offline (no attempt made). Auth failures end the
        session; any other failure flips the state to offline.
        """
        if self._state.is_offline:
            return None

        result = await call()
        if result.ok:
            return result
        if result.is_auth:
            await end_session(self._on_session_expired, result)
        if not (not_found_ok and result.is_not_found):
            self._state.go_offline(f"{result.kind}: {result.message}")
        return result

    async def _send(self, entry: OutboxEntry) -> GatewayResult[Any]:
        """Issue the API call an outbox entry stands for."""
        if entry.domain is SyncDomain.GOALS:
            if entry.operation is OutboxOperation.CREATE:
                return await self._gateway.create_goal(entry.payload)
            if entry.operation is OutboxOperation.TOGGLE:
                return await self._gateway.toggle_goal(entry.record_id, entry.payload)
            if entry.operation is OutboxOperation.DELETE:
                return await self._gateway.delete_goal(entry.record_id)
            return await self._gateway.update_goal(entry.record_id, entry.payload)
        if entry.domain is SyncDomain.QUERIES:
            return await self._gateway.submit_query(entry.payload["text"])
        if entry.domain is SyncDomain.FEEDBACK:
            return await self._gateway.submit_feedback(entry.payload["text"])
        return await self._gateway.update_contact(entry.payload["phone"])

    # =========================================================================
    # Dashboard Reads
    # =========================================================================

    async def load_dashboard(self) -> DashboardSnapshot:
        """Fetch goals, performance, PIP and contact for the dashboard."""
        goals = await self.list_goals()
        performance = await self.fetch_performance()
        pip = await self.fetch_pip()
        contact = await self.fetch_contact()

        return DashboardSnapshot(
            goals=goals.value or [],
            summary=summarize_goals(goals.value or []),
            performance=performance.value,
            pip=pip.value,
            contact=contact.value,
            mode=self._state.mode,
            pending_mutations=self._outbox.pending_count(),
            from_cache=any(r.from_cache for r in (goals, performance, pip, contact)),
        )

    async def list_goals(self) -> FetchResult[List[DomainRecord]]:
        result = await self._attempt(self._gateway.list_goals, not_found_ok=True)
        if result is not None and (result.ok or result.is_not_found):
            server = result.value if result.ok else []
            merged = self._merge_goals(server)
            self._store_records(SyncDomain.GOALS, merged)
            return FetchResult(merged)
        return FetchResult(self.goals, from_cache=True)

    def _merge_goals(self, server: List[DomainRecord]) -> List[DomainRecord]:
        """
        Combine a fresh server list with mutations still waiting in the outbox.

        Unsent creates stay in front, records with queued changes keep their
        optimistic local copy and records queued for deletion stay hidden.
        """
        queued = self._outbox.entries(SyncDomain.GOALS)
        touched = {entry.record_id for entry in queued if entry.record_id}
        deleted = {
            entry.record_id for entry in queued if entry.operation is OutboxOperation.DELETE
        }
        local = {record.id: record for record in self._records[SyncDomain.GOALS]}

        merged = [r for r in local.values() if r.is_temporary and r.id in touched]
        for record in server:
            if record.id in deleted:
                continue
            if record.id in touched and record.id in local:
                merged.append(local[record.id])
            else:
                merged.append(record)
        return merged

    def goal_summary(self) -> GoalSummary:
        return summarize_goals(self._records[SyncDomain.GOALS])

    async def _fetch(
        self,
        key: str,
        call: Callable[[], Awaitable[GatewayResult[Any]]],
        model: Type[ModelT],
        default: Optional[ModelT] = None,
    ) -> FetchResult[ModelT]:
        """Network first; the cached snapshot only when the API is unreachable."""
        result = await self._attempt(call, not_found_ok=True)
        if result is not None and (result.ok or result.is_not_found):
            value = result.value if result.ok else None
            value = value if value is not None else default
            if value is not None:
                self._cache.write(key, value.model_dump(mode="json"))
            return FetchResult(value)

        cached = self._read_snapshot(key, model)
        return FetchResult(cached if cached is not None else default, from_cache=True)

    async def fetch_performance(self) -> FetchResult[PerformanceSnapshot]:
        return await self._fetch(
            PERFORMANCE_KEY, self._gateway.fetch_performance, PerformanceSnapshot
        )

    async def fetch_pip(self) -> FetchResult[PIPRecord]:
        return await self._fetch(PIP_KEY, self._gateway.fetch_pip, PIPRecord, default=PIPRecord())

    async def fetch_contact(self) -> FetchResult[ContactInfo]:
        key = SNAPSHOT_KEYS[SyncDomain.CONTACT]
        if not self._outbox.is_empty(SyncDomain.CONTACT):
            # A queued phone change is newer than anything the server holds
            return FetchResult(self._read_snapshot(key, ContactInfo), from_cache=True)
        return await self._fetch(key, self._gateway.fetch_contact, ContactInfo)

    # =========================================================================
    # Goal Mutations
    # =========================================================================

    async def add_goal(self, text: str) -> MutationResult:
        text = _require_text(text, "text", "Goal")
        session = self._gateway.session
        payload = {
            "goal": text,
            "employee": session.full_name,
            "employeeId": session.employee_id,
            "status": "Pending",
            "progress": "0%",
            "company": self._settings.company_name,
        }

        result = await self._attempt(lambda: self._gateway.create_goal(payload))
        if result is not None and result.ok:
            self._prepend_record(SyncDomain.GOALS, result.value)
            logger.info(f"Goal created on server: {result.value.id}")
            return MutationResult(SaveStatus.SAVED, result.value, SAVED_MESSAGE)

        record = DomainRecord(
            id=new_temporary_id(),
            domain=SyncDomain.GOALS,
            payload={"text": text, "progress": "0%", "isGroup": False},
            status="Pending",
            pending=True,
        )
        self._prepend_record(SyncDomain.GOALS, record)
        self._outbox.enqueue(
            OutboxEntry(
                operation=OutboxOperation.CREATE,
                domain=SyncDomain.GOALS,
                record_id=record.id,
                payload=payload,
            )
        )
        return MutationResult(SaveStatus.PENDING, record, PENDING_MESSAGE)

    async def update_goal(self, goal_id: str, text: str) -> MutationResult:
        text = _require_text(text, "text", "Goal")
        record = self._find_goal(goal_id)
        changes = {"goal": text}
        return await self._mutate_goal(
            record, OutboxOperation.UPDATE, changes, record.with_goal_changes(changes)
        )

    async def toggle_goal(self, goal_id: str) -> MutationResult:
        record = self._find_goal(goal_id)
        completed = not record.completed
        changes = {
            "status": "Completed" if completed else "Pending",
            "progress": "100%" if completed else "0%",
        }
        return await self._mutate_goal(
            record, OutboxOperation.TOGGLE, changes, record.with_goal_changes(changes)
        )

    async def delete_goal(self, goal_id: str) -> MutationResult:
        record = self._find_goal(goal_id)
        return await self._mutate_goal(record, OutboxOperation.DELETE, {}, None)

    async def _mutate_goal(
        self,
        record: DomainRecord,
        operation: OutboxOperation,
        changes: Dict[str, Any],
        updated: Optional[DomainRecord],
    ) -> MutationResult:
        entry = OutboxEntry(
            operation=operation, domain=SyncDomain.GOALS, record_id=record.id, payload=changes
        )

        # A temporary id has nothing to address on the server yet, and a record
        # with queued changes must not let a direct call overtake them
        if not record.is_temporary and not self._has_queued(SyncDomain.GOALS, record.id):
            result = await self._attempt(lambda: self._send(entry))
            if result is not None and result.ok:
                self._replace_record(SyncDomain.GOALS, record.id, updated)
                return MutationResult(SaveStatus.SAVED, updated, SAVED_MESSAGE)

        pending = updated.model_copy(update={"pending": True}) if updated is not None else None
        self._replace_record(SyncDomain.GOALS, record.id, pending)
        self._outbox.enqueue(entry)
        return MutationResult(SaveStatus.PENDING, pending, PENDING_MESSAGE)

    # =========================================================================
    # Queries, Feedback and Contact
    # =========================================================================

    async def submit_query(self, text: str) -> MutationResult:
        text = _require_text(text, "text", "Query")
        return await self._submit_text(SyncDomain.QUERIES, text, self._gateway.submit_query)

    async def submit_feedback(self, text: str) -> MutationResult:
        text = _require_text(text, "text", "Feedback")
        return await self._submit_text(SyncDomain.FEEDBACK, text, self._gateway.submit_feedback)

    async def _submit_text(
        self,
        domain: SyncDomain,
        text: str,
        submit: Callable[[str], Awaitable[GatewayResult[Any]]],
    ) -> MutationResult:
        result = await self._attempt(lambda: submit(text))
        if result is not None and result.ok:
            record = DomainRecord.from_submission(domain, text, result.value)
            self._prepend_record(domain, record)
            return MutationResult(SaveStatus.SAVED, record, SAVED_MESSAGE)

        record = DomainRecord(
            id=new_temporary_id(),
            domain=domain,
            payload={"text": text},
            status="Pending",
            pending=True,
        )
        self._prepend_record(domain, record)
        self._outbox.enqueue(
            OutboxEntry(
                operation=OutboxOperation.CREATE,
                domain=domain,
                record_id=record.id,
                payload={"text": text},
            )
        )
        return MutationResult(SaveStatus.PENDING, record, PENDING_MESSAGE)

    async def update_contact(self, phone: str) -> MutationResult:
        phone = _require_text(phone, "phone", "Contact number")
        if phone == CONTACT_PLACEHOLDER:
            raise InvalidInputError("Contact number cannot be empty.", field="phone")

        contact = ContactInfo(employee_id=self._gateway.employee_id, phone=phone)
        self._cache.write(SNAPSHOT_KEYS[SyncDomain.CONTACT], contact.model_dump(mode="json"))

        result = None
        if self._outbox.is_empty(SyncDomain.CONTACT):
            result = await self._attempt(lambda: self._gateway.update_contact(phone))
        if result is not None and result.ok:
            logger.info("Contact number updated on server")
            return MutationResult(SaveStatus.SAVED, contact, SAVED_MESSAGE)

        self._outbox.enqueue(
            OutboxEntry(
                operation=OutboxOperation.UPDATE,
                domain=SyncDomain.CONTACT,
                record_id=contact.employee_id,
                payload={"phone": phone},
            )
        )
        return MutationResult(SaveStatus.PENDING, contact, PENDING_MESSAGE)

    # =========================================================================
    # Replay
    # =========================================================================

    async def sync_now(self) -> SyncReport:
        """
        Drain every outbox domain through the API.

        Returns:
            SyncReport with one DrainReport per domain.
        """
        start_time = time.time()
        report = SyncReport()

        for domain in SyncDomain:
            if self._settings.bulk_replay and domain in BULK_DOMAINS:
                report.domains[domain] = await self._outbox.drain_batch(
                    domain, self._bulk_replayer(domain)
                )
            else:
                report.domains[domain] = await self._outbox.drain(domain, self._replay)

        report.duration_ms = (time.time() - start_time) * 1000

        if report.succeeded:
            self._state.go_online()
            logger.info(f"Sync completed in {report.duration_ms:.0f}ms: {report.to_dict()}")
            await self.load_dashboard()
        else:
            failed = ", ".join(str(domain) for domain in report.failed_domains)
            self._state.go_offline(f"sync failed for {failed}")
        return report

    async def _replay(self, entry: OutboxEntry) -> ReplayDecision:
        if entry.operation is not OutboxOperation.CREATE and is_temporary_id(entry.record_id):
            logger.warning(
                f"Dropping queued {entry.operation} on '{entry.domain}': "
                f"record {entry.record_id} was never created on the server"
            )
            return ReplayDecision.DROPPED

        result = await self._send(entry)
        if result.ok:
            self._acknowledge(entry, result.value)
            return ReplayDecision.ACKNOWLEDGED

        if result.is_auth:
            await end_session(self._on_session_expired, result)
        if result.kind is ErrorKind.CONNECTIVITY:
            return ReplayDecision.FAILED
        if result.is_not_found and entry.operation is OutboxOperation.DELETE:
            logger.info(f"Queued delete of {entry.record_id} already applied on server")
            return ReplayDecision.ACKNOWLEDGED

        attempts = entry.attempts + 1
        if attempts >= self._settings.stale_entry_max_attempts:
            logger.warning(
                f"Dropping queued {entry.operation} on '{entry.domain}' "
                f"(record={entry.record_id}) after {attempts} attempts: {result.kind} {result.message}"
            )
            self._forget(entry)
            return ReplayDecision.DROPPED

        self._outbox.replace(entry.model_copy(update={"attempts": attempts}))
        return ReplayDecision.FAILED

    def _acknowledge(self, entry: OutboxEntry, value: Any) -> None:
        """Fold an acknowledged replay into local state."""
        if entry.domain is SyncDomain.GOALS:
            if entry.operation is OutboxOperation.CREATE:
                record: DomainRecord = value
                self._outbox.rewrite_record_id(SyncDomain.GOALS, entry.record_id, record.id)
                pending = self._has_queued(SyncDomain.GOALS, record.id)
                current = self._find_record(SyncDomain.GOALS, entry.record_id)
                if pending and current is not None:
                    record = current.model_copy(update={"id": record.id})
                self._replace_record(
                    SyncDomain.GOALS, entry.record_id, record.model_copy(update={"pending": pending})
                )
                logger.info(f"Goal {entry.record_id} confirmed as {record.id}")
            elif entry.operation is not OutboxOperation.DELETE:
                current = self._find_record(SyncDomain.GOALS, entry.record_id)
                if current is not None:
                    pending = self._has_queued(SyncDomain.GOALS, current.id, entry.entry_id)
                    # Later queued edits are already applied locally; keep them
                    confirmed = current if pending else current.with_goal_changes(entry.payload)
                    self._replace_record(
                        SyncDomain.GOALS, current.id, confirmed.model_copy(update={"pending": pending})
                    )
        elif entry.domain in RECORD_DOMAINS:
            record = DomainRecord.from_submission(entry.domain, entry.payload["text"], value)
            self._replace_record(entry.domain, entry.record_id, record)

    def _forget(self, entry: OutboxEntry) -> None:
        """Undo the optimistic effect of a dropped entry where it cannot be kept."""
        if entry.domain not in RECORD_DOMAINS:
            return
        if entry.operation is OutboxOperation.CREATE:
            self._replace_record(entry.domain, entry.record_id, None)
            return
        current = self._find_record(entry.domain, entry.record_id)
        if current is not None:
            pending = self._has_queued(entry.domain, current.id, entry.entry_id)
            self._replace_record(entry.domain, current.id, current.model_copy(update={"pending": pending}))

    def _bulk_replayer(self, domain: SyncDomain) -> Callable[[List[OutboxEntry]], Awaitable[bool]]:
        async def _replay_batch(entries: List[OutboxEntry]) -> bool:
            items = [self._bulk_item(entry) for entry in entries]
            result = await self._gateway.bulk_sync(domain, items)
            if result.ok:
                for entry in entries:
                    if entry.domain is not SyncDomain.GOALS:
                        self._acknowledge(entry, None)
                return True
            if result.is_auth:
                await end_session(self._on_session_expired, result)
            return False

        return _replay_batch

    @staticmethod
    def _bulk_item(entry: OutboxEntry) -> Dict[str, Any]:
        if entry.domain is SyncDomain.QUERIES:
            return {"queryText": entry.payload["text"], "submittedAt": entry.enqueued_at.isoformat()}
        if entry.domain is SyncDomain.FEEDBACK:
            return {"feedbackText": entry.payload["text"], "submittedAt": entry.enqueued_at.isoformat()}
        return {"operation": str(entry.operation), "id": entry.record_id, **entry.payload}

    # =========================================================================
    # Automatic Retry
    # =========================================================================

    def start_auto_retry(self) -> asyncio.Task:
        """Start the background retry loop (idempotent)."""
        if self._retry_task is not None and not self._retry_task.done():
            return self._retry_task
        self._retry_task = asyncio.get_running_loop().create_task(self._auto_retry_loop())
        logger.info(
            f"Auto retry started (every {self._settings.auto_retry_interval_seconds}s, "
            f"max attempts: {self._settings.auto_retry_max_attempts or 'unlimited'})"
        )
        return self._retry_task

    async def stop_auto_retry(self) -> None:
        task, self._retry_task = self._retry_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Auto retry stopped")

    async def _auto_retry_loop(self) -> None:
        attempts = 0
        max_attempts = self._settings.auto_retry_max_attempts

        while True:
            await asyncio.sleep(self._settings.auto_retry_interval_seconds)
            if self._state.is_online and self._outbox.pending_count() == 0:
                attempts = 0
                continue
            if max_attempts is not None and attempts >= max_attempts:
                logger.warning(f"Auto retry gave up after {attempts} attempts")
                return

            attempts += 1
            try:
                report = await self.sync_now()
            except AuthenticationError:
                logger.warning("Auto retry stopped: session expired")
                return
            if report.succeeded and self._state.is_online:
                attempts = 0
