"""
Offline-first Sync Layer.

Keeps the employee portal usable while the API is unreachable and
reconciles the self-appraisal draft without creating duplicates.

Components:
    - LocalCache: Persistent key-value snapshots (SQLite)
    - OutboxQueue: Per-domain FIFO of mutations waiting for the API
    - Debouncer: Coalesces bursts of edits into one action
    - RemoteGateway: Typed API client returning Ok/Err results
    - SyncCoordinator: Online/offline state machine and replay
    - DraftReconciler: Check-then-act saves of the appraisal draft
"""

from pms_sync.offline.coordinator import SyncCoordinator, SyncState
from pms_sync.offline.debouncer import Debouncer
from pms_sync.offline.draft_reconciler import DraftReconciler
from pms_sync.offline.enums import (
    DraftOutcome,
    DraftStatus,
    OutboxOperation,
    SaveStatus,
    SyncDomain,
    SyncMode,
)
from pms_sync.offline.exceptions import (
    AuthenticationError,
    CacheConflictError,
    InvalidInputError,
    SyncConfigurationError,
    SyncError,
)
from pms_sync.offline.gateway import RemoteGateway
from pms_sync.offline.local_cache import LocalCache
from pms_sync.offline.models import (
    AppraisalDraft,
    ContactInfo,
    DomainRecord,
    EmployeeSession,
    FeedbackCard,
    GoalSummary,
    OutboxEntry,
    PerformanceSnapshot,
    PIPRecord,
    RatingRow,
    summarize_goals,
)
from pms_sync.offline.outbox import OutboxQueue, ReplayDecision
from pms_sync.offline.results import (
    DashboardSnapshot,
    DrainReport,
    Err,
    ErrorKind,
    FetchResult,
    MutationResult,
    Ok,
    SyncReport,
)

__all__ = [
    # Components
    "LocalCache",
    "OutboxQueue",
    "ReplayDecision",
    "Debouncer",
    "RemoteGateway",
    "SyncCoordinator",
    "SyncState",
    "DraftReconciler",
    # Enums
    "SyncMode",
    "SyncDomain",
    "OutboxOperation",
    "DraftStatus",
    "SaveStatus",
    "DraftOutcome",
    # Models
    "EmployeeSession",
    "DomainRecord",
    "OutboxEntry",
    "RatingRow",
    "FeedbackCard",
    "AppraisalDraft",
    "PerformanceSnapshot",
    "PIPRecord",
    "ContactInfo",
    "GoalSummary",
    "summarize_goals",
    # Results
    "Ok",
    "Err",
    "ErrorKind",
    "MutationResult",
    "FetchResult",
    "DashboardSnapshot",
    "DrainReport",
    "SyncReport",
    # Exceptions
    "SyncError",
    "SyncConfigurationError",
    "InvalidInputError",
    "AuthenticationError",
    "CacheConflictError",
]
