"""
Draft Reconciler.

Keeps at most one server-side self-appraisal draft per (owner, period)
while the client saves the same draft over and over on a flaky network.

A held ``server_id`` is never trusted. Every save runs check-then-act:

    1. No id held: look for an existing draft for the owner and period.
       Id held: ``GET`` it; a missing or already-submitted record counts
       as gone.
    2. Found: ``PUT`` the full document.
    3. Not found: ``POST`` it and adopt the returned id.
    4. ``PUT`` answered 404: forget the id and run once more from step 1,
       then give up with DEFERRED.

Edits are written to the LocalCache immediately and saved through the
Debouncer, so a burst of edits costs one reconciliation.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from pms_sync.core.config import SyncSettings, get_sync_settings
from pms_sync.offline.coordinator import SessionExpiredHandler, end_session
from pms_sync.offline.debouncer import Debouncer
from pms_sync.offline.enums import DraftOutcome, DraftStatus
from pms_sync.offline.exceptions import InvalidInputError
from pms_sync.offline.gateway import RemoteGateway
from pms_sync.offline.local_cache import LocalCache
from pms_sync.offline.models import (
    AppraisalDraft,
    FeedbackCard,
    RatingRow,
    current_period,
    draft_cache_key,
    utcnow,
)
from pms_sync.offline.results import GatewayResult

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

MAX_RESOLVE_PASSES = 2
WEIGHTAGE_TOLERANCE = 0.01


def _build(model: Type[ModelT], **values: Any) -> ModelT:
    """Validate user input, translating pydantic errors to InvalidInputError."""
    try:
        return model(**values)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise InvalidInputError(f"Invalid {field or 'value'}: {first.get('msg')}", field=field) from e


class _Deferred(Exception):
    """Internal signal: stop reconciling and report DEFERRED."""


class DraftReconciler:
    """
    Editing and reconciliation for the open self-appraisal draft.

    Args:
        gateway: RemoteGateway for the signed-in employee.
        cache: LocalCache holding the draft under
            ``offline_appraisal_draft:<owner>:<period>``
            (opened at ``settings.cache_path`` if omitted).
        debouncer: Debouncer used to coalesce saves (a private one if omitted).
        settings: Sync settings; loaded from the environment if omitted.
        on_session_expired: Called (sync or async) on 401/403 before
            AuthenticationError is raised.
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        cache: Optional[LocalCache] = None,
        debouncer: Optional[Debouncer] = None,
        settings: Optional[SyncSettings] = None,
        on_session_expired: Optional[SessionExpiredHandler] = None,
    ) -> None:
        self._settings = settings or get_sync_settings()
        self._gateway = gateway
        self._cache = cache or LocalCache.from_settings(self._settings)
        self._debouncer = debouncer or Debouncer()
        self._on_session_expired = on_session_expired
        self._draft: Optional[AppraisalDraft] = None
        self._locks: Dict[str, asyncio.Lock] = {}
        self.last_error: Optional[str] = None
        self.last_submitted: Optional[AppraisalDraft] = None

    @property
    def draft(self) -> Optional[AppraisalDraft]:
        return self._draft

    def _lock_for(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def _require_open(self) -> AppraisalDraft:
        if self._draft is None:
            raise InvalidInputError("No self-appraisal draft is open", field="draft")
        if self._draft.is_submitted:
            raise InvalidInputError("This self-appraisal has already been submitted", field="status")
        return self._draft

    def _persist(self, draft: AppraisalDraft) -> None:
        self._cache.write(draft.cache_key, draft.model_dump(mode="json"))

    # =========================================================================
    # Opening
    # =========================================================================

    async def open(
        self, owner_id: str, owner_name: str = "", period: Optional[str] = None
    ) -> AppraisalDraft:
        """
        Load the draft for (owner, period).

        The local copy wins since it may hold unsaved edits. Otherwise an
        existing server draft is adopted, or a fresh one started.
        """
        if not (owner_id or "").strip():
            raise InvalidInputError("Employee ID is required", field="owner_id")
        period = period or current_period()

        cached = self._cache.read(draft_cache_key(owner_id, period))
        if cached is not None:
            draft = AppraisalDraft.model_validate(cached)
            logger.info(f"Opened local draft for {owner_id} {period} (server id: {draft.server_id})")
        else:
            draft = await self._server_draft(owner_id, period) or AppraisalDraft(
                owner_id=owner_id, period=period
            )
            if owner_name:
                draft = draft.model_copy(update={"owner_name": owner_name})
            self._persist(draft)

        self._draft = draft
        return draft

    async def _server_draft(self, owner_id: str, period: str) -> Optional[AppraisalDraft]:
        result = await self._gateway.find_drafts(owner_id)
        if result.ok:
            return self._match(result.value, period)
        if result.is_auth:
            await end_session(self._on_session_expired, result)
        logger.info(f"Could not look up server drafts for {owner_id}: {result.kind}")
        return None

    @staticmethod
    def _match(drafts: Any, period: str) -> Optional[AppraisalDraft]:
        return next(
            (
                d for d in drafts
                if d.period == period and d.status is DraftStatus.DRAFT and d.server_id
            ),
            None,
        )

    # =========================================================================
    # Editing
    # =========================================================================

    def _edit(self, change: Callable[[AppraisalDraft], Dict[str, Any]]) -> AppraisalDraft:
        draft = self._require_open()
        updates = change(draft)
        updates["updated_at"] = utcnow()
        draft = draft.model_copy(update=updates)
        self._draft = draft
        self._persist(draft)
        self.schedule_save()
        return draft

    @staticmethod
    def _check_index(items: list, index: int, field: str) -> None:
        if not 0 <= index < len(items):
            raise InvalidInputError(f"No {field} at position {index}", field=field)

    def add_rating(self, criteria: str, weightage: float, score: float) -> AppraisalDraft:
        row = _build(RatingRow, criteria=criteria, weightage=weightage, score=score)
        return self._edit(lambda d: {"ratings": d.ratings + [row]})

    def update_rating(
        self,
        index: int,
        criteria: Optional[str] = None,
        weightage: Optional[float] = None,
        score: Optional[float] = None,
    ) -> AppraisalDraft:
        draft = self._require_open()
        self._check_index(draft.ratings, index, "ratings")
        current = draft.ratings[index]
        row = _build(
            RatingRow,
            criteria=current.criteria if criteria is None else criteria,
            weightage=current.weightage if weightage is None else weightage,
            score=current.score if score is None else score,
        )
        return self._edit(
            lambda d: {"ratings": [row if i == index else r for i, r in enumerate(d.ratings)]}
        )

    def remove_rating(self, index: int) -> AppraisalDraft:
        draft = self._require_open()
        self._check_index(draft.ratings, index, "ratings")
        return self._edit(lambda d: {"ratings": [r for i, r in enumerate(d.ratings) if i != index]})

    def add_feedback_card(
        self, feedback: str, score: int, development: str = "", strengths: str = ""
    ) -> AppraisalDraft:
        card = _build(
            FeedbackCard, feedback=feedback, development=development, strengths=strengths, score=score
        )
        return self._edit(lambda d: {"feedback_cards": d.feedback_cards + [card]})

    def update_feedback_card(
        self,
        index: int,
        feedback: Optional[str] = None,
        score: Optional[int] = None,
        development: Optional[str] = None,
        strengths: Optional[str] = None,
    ) -> AppraisalDraft:
        draft = self._require_open()
        self._check_index(draft.feedback_cards, index, "feedback_cards")
        current = draft.feedback_cards[index]
        card = _build(
            FeedbackCard,
            feedback=current.feedback if feedback is None else feedback,
            development=current.development if development is None else development,
            strengths=current.strengths if strengths is None else strengths,
            score=current.score if score is None else score,
        )
        return self._edit(
            lambda d: {
                "feedback_cards": [card if i == index else c for i, c in enumerate(d.feedback_cards)]
            }
        )

    def remove_feedback_card(self, index: int) -> AppraisalDraft:
        draft = self._require_open()
        self._check_index(draft.feedback_cards, index, "feedback_cards")
        return self._edit(
            lambda d: {"feedback_cards": [c for i, c in enumerate(d.feedback_cards) if i != index]}
        )

    # =========================================================================
    # Saving
    # =========================================================================

    def schedule_save(self) -> asyncio.Task:
        """Save the open draft once edits have been quiet for ``draft_debounce_ms``."""
        draft = self._require_open()
        return self._debouncer.schedule(
            draft.cache_key, self.save, self._settings.draft_debounce_ms
        )

    async def flush(self) -> Optional[DraftOutcome]:
        """Run a pending debounced save now; None if nothing was pending."""
        if self._draft is None:
            return None
        return await self._debouncer.flush(self._draft.cache_key)

    async def save(self, draft: Optional[AppraisalDraft] = None) -> DraftOutcome:
        """
        Reconcile the draft with the server.

        Args:
            draft: Draft to save; defaults to the open draft. Passing a draft
                makes it the open draft.

        Returns:
            SAVED when the server holds exactly this content, DEFERRED when
            it could not be confirmed (the draft stays in the local cache).
        """
        if draft is not None:
            if draft.is_submitted:
                raise InvalidInputError("This self-appraisal has already been submitted", field="status")
            self._draft = draft
            self._persist(draft)
        key = self._require_open().cache_key

        async with self._lock_for(key):
            try:
                await self._reconcile(key)
            except _Deferred as e:
                self.last_error = str(e)
                logger.warning(f"Draft save deferred for {key}: {e}")
                return DraftOutcome.DEFERRED

        self.last_error = None
        return DraftOutcome.SAVED

    def _latest(self, key: str) -> AppraisalDraft:
        if self._draft is None or self._draft.cache_key != key:
            raise _Deferred("draft was closed while saving")
        return self._draft

    def _adopt(self, key: str, server_id: Optional[str]) -> None:
        """Record the server id on the open draft, keeping edits made meanwhile."""
        draft = self._latest(key)
        if draft.server_id != server_id:
            draft = draft.model_copy(update={"server_id": server_id})
            self._draft = draft
            self._persist(draft)

    async def _check(self, result: GatewayResult[Any], step: str) -> None:
        if result.ok or result.is_not_found:
            return
        if result.is_auth:
            await end_session(self._on_session_expired, result)
        raise _Deferred(f"{step} failed: {result.kind} {result.message}".strip())

    async def _resolve_id(self, key: str) -> Optional[str]:
        """Steps 1 and 3 of check-then-act: find a server draft we may update."""
        draft = self._latest(key)

        if draft.server_id:
            result = await self._gateway.get_appraisal(draft.server_id)
            await self._check(result, "existence check")
            if result.ok and not result.value.is_submitted:
                return draft.server_id
            logger.info(f"Held draft id {draft.server_id} is gone or submitted; re-resolving")
            self._adopt(key, None)

        result = await self._gateway.find_drafts(draft.owner_id)
        await self._check(result, "draft lookup")
        match = self._match(result.value, draft.period) if result.ok else None
        if match is not None:
            logger.info(f"Adopting existing server draft {match.server_id} for {key}")
            self._adopt(key, match.server_id)
            return match.server_id
        return None

    async def _reconcile(self, key: str) -> None:
        for _ in range(MAX_RESOLVE_PASSES):
            server_id = await self._resolve_id(key)
            payload = self._latest(key).to_payload()

            if server_id is None:
                result = await self._gateway.create_appraisal(payload)
                await self._check(result, "create")
                if not result.ok:
                    raise _Deferred("create failed: not found")
                self._adopt(key, result.value)
                logger.info(f"Created server draft {result.value} for {key}")
                return

            result = await self._gateway.update_appraisal(server_id, payload)
            await self._check(result, "update")
            if result.ok:
                return

            # Vanished between check and update
            logger.warning(f"Draft {server_id} disappeared during update; retrying once")
            self._adopt(key, None)

        raise _Deferred("draft kept disappearing on the server")

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit(self) -> DraftOutcome:
        """
        Save the final content and submit it.

        On success all local state for (owner, period) is cleared; a later
        ``open`` for the same period starts a fresh draft.
        """
        draft = self._require_open()
        if not draft.ratings:
            raise InvalidInputError("Add at least one rating before submitting", field="ratings")
        total = sum(row.weightage for row in draft.ratings)
        if abs(total - 100) > WEIGHTAGE_TOLERANCE:
            raise InvalidInputError(
                f"Total weightage must be 100% (currently {total:.2f}%)", field="ratings"
            )

        key = draft.cache_key
        self._debouncer.cancel(key)
        if await self.save() is not DraftOutcome.SAVED:
            return DraftOutcome.DEFERRED

        async with self._lock_for(key):
            server_id = self._latest(key).server_id
            result = await self._gateway.submit_appraisal(server_id)
            if not result.ok:
                if result.is_auth:
                    await end_session(self._on_session_expired, result)
                self.last_error = f"submit failed: {result.kind} {result.message}".strip()
                logger.warning(f"Draft submission deferred for {key}: {self.last_error}")
                return DraftOutcome.DEFERRED

            self.last_submitted = self._latest(key).model_copy(
                update={"status": DraftStatus.SUBMITTED, "updated_at": utcnow()}
            )
            self._cache.remove(key)
            self._draft = None
            logger.info(f"Submitted self-appraisal {server_id} for {key}")
        return DraftOutcome.SUBMITTED

    def close(self) -> None:
        """Drop pending saves; the local copy of the draft is kept."""
        self._debouncer.cancel_all()
        self._draft = None
