"""
Pydantic models for synchronized entities.

Server responses are loosely shaped (``_id`` vs ``id``, ``goal`` vs
``description``); the ``from_response`` constructors normalize them once so
the rest of the sync layer works with typed records.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar
from uuid import uuid4

from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator, model_validator

from pms_sync.offline.enums import DraftStatus, OutboxOperation, SyncDomain

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "tmp-"

RowT = TypeVar("RowT", bound=BaseModel)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_temporary_id() -> str:
    """Client-side id used until the server assigns one."""
    return f"{TEMP_ID_PREFIX}{uuid4().hex}"


def is_temporary_id(record_id: Optional[str]) -> bool:
    return bool(record_id) and record_id.startswith(TEMP_ID_PREFIX)


def current_period(now: Optional[datetime] = None) -> str:
    """Appraisal period for a date, e.g. ``2026-Q4``."""
    now = now or utcnow()
    return f"{now.year}-Q{(now.month - 1) // 3 + 1}"


def _server_id(data: Dict[str, Any]) -> Optional[str]:
    value = data.get("_id") or data.get("id")
    return str(value) if value is not None else None


# =============================================================================
# Session
# =============================================================================


class EmployeeSession(BaseModel):
    """
    Opaque login result: who is signed in and the token to send.

    The token format and refresh protocol belong to the auth service.
    """

    employee_id: str = Field(min_length=1)
    full_name: str = "Employee"
    email: str = ""
    token: SecretStr = SecretStr("")


# =============================================================================
# Domain Records
# =============================================================================


class DomainRecord(BaseModel):
    """
    Envelope for any synchronized entity.

    Attributes:
        id: Server id once known, otherwise a ``tmp-`` id.
        domain: Owning domain.
        payload: Domain-specific fields (goal text, progress, query text, ...).
        completed: Completion flag where the domain has one (goals).
        status: Server-side status string where applicable.
        created_at: Creation time.
        pending: True while a mutation for this record waits in the outbox.
    """

    id: str
    domain: SyncDomain
    payload: Dict[str, Any] = Field(default_factory=dict)
    completed: bool = False
    status: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    pending: bool = False

    @property
    def is_temporary(self) -> bool:
        return is_temporary_id(self.id)

    @property
    def text(self) -> str:
        return str(self.payload.get("text", ""))

    @classmethod
    def from_goal_response(cls, data: Dict[str, Any]) -> "DomainRecord":
        """Build a goal record from a ``/new-goals`` response item."""
        status = data.get("status") or "Pending"
        progress = data.get("progress") or "0%"
        created_at = data.get("createdAt")
        return cls(
            id=_server_id(data) or new_temporary_id(),
            domain=SyncDomain.GOALS,
            payload={
                "text": data.get("goal") or data.get("description") or "No goal description",
                "progress": progress,
                "isGroup": bool(data.get("isGroup", False)),
            },
            completed=status == "Completed" or progress == "100%",
            status=status,
            created_at=created_at or utcnow(),
        )

    @classmethod
    def from_submission(
        cls, domain: SyncDomain, text: str, data: Optional[Any] = None
    ) -> "DomainRecord":
        """Build a query/feedback record from a submit response (which may be empty)."""
        data = data if isinstance(data, dict) else {}
        return cls(
            id=_server_id(data) or uuid4().hex,
            domain=domain,
            payload={"text": text},
            status=data.get("status") or "Submitted",
            created_at=data.get("createdAt") or utcnow(),
        )

    def with_goal_changes(self, changes: Dict[str, Any]) -> "DomainRecord":
        """Apply a goal request body (``goal``/``status``/``progress``) to this record."""
        payload = dict(self.payload)
        if "goal" in changes:
            payload["text"] = changes["goal"]
        if "progress" in changes:
            payload["progress"] = changes["progress"]
        status = changes.get("status", self.status)
        return self.model_copy(
            update={
                "payload": payload,
                "status": status,
                "completed": status == "Completed" or payload.get("progress") == "100%",
            }
        )


class OutboxEntry(BaseModel):
    """
    One pending mutation that could not reach the API.

    Entries of one domain replay strictly in enqueue order.
    """

    entry_id: str = Field(default_factory=lambda: uuid4().hex)
    operation: OutboxOperation
    domain: SyncDomain
    record_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    enqueued_at: datetime = Field(default_factory=utcnow)
    attempts: int = 0

    @model_validator(mode="after")
    def check_record_id(self) -> "OutboxEntry":
        """Goal updates, toggles and deletes must name the goal they touch."""
        if (
            self.domain is SyncDomain.GOALS
            and self.operation is not OutboxOperation.CREATE
            and not self.record_id
        ):
            raise ValueError(f"{self.operation} on goals requires record_id")
        return self


# =============================================================================
# Self-Appraisal Draft
# =============================================================================


class RatingRow(BaseModel):
    """A weighted criterion in the self-appraisal ratings table."""

    criteria: str = Field(min_length=1)
    weightage: float = Field(ge=0, le=100)
    score: float = Field(ge=1, le=5)

    @field_validator("criteria")
    @classmethod
    def strip_criteria(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("criteria must not be blank")
        return v

    def to_payload(self) -> Dict[str, Any]:
        return {"criteria": self.criteria, "weightage": self.weightage, "rating": self.score}


class FeedbackCard(BaseModel):
    """Free-text self-assessment card with its own score."""

    feedback: str = Field(min_length=1)
    development: str = ""
    strengths: str = ""
    score: int = Field(ge=1, le=5)

    @field_validator("feedback")
    @classmethod
    def strip_feedback(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("feedback must not be blank")
        return v

    def to_payload(self) -> Dict[str, Any]:
        return {
            "feedback": self.feedback,
            "development": self.development,
            "strengths": self.strengths,
            "rating": self.score,
        }


class AppraisalDraft(BaseModel):
    """
    Aggregate root of one employee's self-appraisal for one period.

    ``server_id`` is a hint, not a fact: it is re-verified before every
    update while the draft is open. A submitted draft is terminal.
    """

    server_id: Optional[str] = None
    owner_id: str = Field(min_length=1)
    owner_name: str = ""
    period: str = Field(default_factory=current_period)
    ratings: List[RatingRow] = Field(default_factory=list)
    feedback_cards: List[FeedbackCard] = Field(default_factory=list)
    status: DraftStatus = DraftStatus.DRAFT
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def cache_key(self) -> str:
        return draft_cache_key(self.owner_id, self.period)

    @property
    def is_submitted(self) -> bool:
        return self.status is DraftStatus.SUBMITTED

    def to_payload(self) -> Dict[str, Any]:
        """Full document body; every save resends the complete draft."""
        return {
            "userId": self.owner_id,
            "userName": self.owner_name,
            "employeeId": self.owner_id,
            "appraisalPeriod": self.period,
            "ratings": [row.to_payload() for row in self.ratings],
            "feedbackCards": [card.to_payload() for card in self.feedback_cards],
            "status": str(self.status),
        }

    @classmethod
    def from_response(cls, data: Dict[str, Any], owner_id: Optional[str] = None) -> "AppraisalDraft":
        """
        Build a draft from a ``/self-appraisals`` response item.

        Server documents are read leniently: rows the editing rules would
        reject (blank feedback, out-of-range scores) are skipped with a
        warning, and any status other than ``draft`` counts as submitted.
        """
        server_id = _server_id(data)
        status = str(data.get("status") or DraftStatus.DRAFT).lower()
        return cls(
            server_id=server_id,
            owner_id=str(data.get("employeeId") or data.get("userId") or owner_id or ""),
            owner_name=data.get("userName") or "",
            period=data.get("appraisalPeriod") or current_period(),
            ratings=_valid_rows(
                server_id,
                data.get("ratings"),
                lambda row: RatingRow(
                    criteria=row.get("criteria") or "",
                    weightage=float(row.get("weightage") or 0),
                    score=float(row.get("rating") or row.get("score") or 1),
                ),
            ),
            feedback_cards=_valid_rows(
                server_id,
                data.get("feedbackCards"),
                lambda card: FeedbackCard(
                    feedback=card.get("feedback") or "",
                    development=card.get("development") or "",
                    strengths=card.get("strengths") or "",
                    score=int(card.get("rating") or card.get("score") or 1),
                ),
            ),
            status=DraftStatus.DRAFT if status == DraftStatus.DRAFT.value else DraftStatus.SUBMITTED,
        )


def _valid_rows(
    server_id: Optional[str], items: Any, build: Callable[[Dict[str, Any]], RowT]
) -> List[RowT]:
    rows: List[RowT] = []
    if items is None:
        return rows
    if not isinstance(items, list):
        logger.warning(f"Ignoring non-list rows of appraisal {server_id}: {items!r}")
        return rows
    for position, item in enumerate(items):
        try:
            rows.append(build(item))
        except (ValidationError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Skipping invalid row {position} of appraisal {server_id}: {e}")
    return rows


def draft_cache_key(owner_id: str, period: str) -> str:
    return f"offline_appraisal_draft:{owner_id}:{period}"


# =============================================================================
# Read-only Dashboard Snapshots
# =============================================================================


class PerformanceSnapshot(BaseModel):
    """Latest performance review shown on the dashboard."""

    rating: str = "Not Rated"
    reviewer: str = "Not Assigned"
    added_on: str = ""
    company: str = ""
    employee_name: str = "Employee"
    employee_id: str = ""
    status: str = "No Review Found"

    @classmethod
    def from_response(
        cls, data: Dict[str, Any], employee_id: str, company: str
    ) -> "PerformanceSnapshot":
        added_on = data.get("addedOn") or (data.get("createdAt") or "").split("T")[0]
        return cls(
            rating=str(data.get("rating") or "Not Rated"),
            reviewer=data.get("reviewer") or "Not Assigned",
            added_on=added_on or utcnow().date().isoformat(),
            company=data.get("company") or company,
            employee_name=data.get("employee") or "Employee",
            employee_id=data.get("employeeId") or employee_id,
            status="Processed",
        )


class PIPRecord(BaseModel):
    """Performance Improvement Plan summary."""

    targets: str = "No active Performance Improvement Plan"
    comments: str = "Your performance is meeting expectations"
    reason: str = "No improvement plan needed"
    date_issued: str = "N/A"
    has_pip: bool = False

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "PIPRecord":
        return cls(
            targets=data.get("targets") or "No specific targets set",
            comments=data.get("comments") or "No manager comments available",
            reason=data.get("reason") or "No reason specified",
            date_issued=data.get("dateIssued") or "Date not specified",
            has_pip=True,
        )


class ContactInfo(BaseModel):
    """Employee contact number kept on the resignation/profile record."""

    employee_id: str
    phone: str

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("contact number cannot be empty")
        return v


class GoalSummary(BaseModel):
    """Derived goal statistics for the dashboard header."""

    total_goals: int = 0
    completed_goals: int = 0
    completion_rate: int = 0
    project_score: str = "0.0"


def _progress_percent(progress: Any) -> Optional[float]:
    if isinstance(progress, str) and "%" in progress:
        try:
            return float(progress.replace("%", ""))
        except ValueError:
            return None
    return None


def summarize_goals(goals: List[DomainRecord]) -> GoalSummary:
    """
    Compute completion rate and project score.

    A goal counts as completed when flagged completed or at 100% progress.
    The project score is the mean of ``progress / 20`` over goals that
    report a percentage, i.e. a 0-5 scale.
    """
    if not goals:
        return GoalSummary()

    completed = [
        goal for goal in goals
        if goal.completed or goal.status == "Completed" or _progress_percent(goal.payload.get("progress")) == 100
    ]
    scores = [
        percent / 20
        for percent in (_progress_percent(goal.payload.get("progress")) for goal in goals)
        if percent is not None
    ]
    project_score = f"{sum(scores) / len(scores):.1f}" if scores else "0.0"

    return GoalSummary(
        total_goals=len(goals),
        completed_goals=len(completed),
        completion_rate=round(len(completed) / len(goals) * 100),
        project_score=project_score,
    )
