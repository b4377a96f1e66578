"""Typed result contracts for gateway calls and sync operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Optional, TypeVar, Union

from pms_sync.offline.enums import SaveStatus, SyncDomain, SyncMode

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Why a gateway call failed."""

    CONNECTIVITY = "connectivity"  # transport error, timeout, 5xx
    NOT_FOUND = "not_found"  # 404 on an id the client believed valid
    AUTH = "auth"  # 401/403
    REJECTED = "rejected"  # other 4xx, or success=false in the envelope


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful gateway response, already unwrapped from the envelope."""

    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    """Failed gateway call."""

    kind: ErrorKind
    message: str = ""
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return False

    @property
    def is_auth(self) -> bool:
        return self.kind is ErrorKind.AUTH

    @property
    def is_not_found(self) -> bool:
        return self.kind is ErrorKind.NOT_FOUND


GatewayResult = Union[Ok[T], Err]


@dataclass(frozen=True)
class MutationResult:
    """Outcome of a coordinator mutation as seen by the UI."""

    status: SaveStatus
    record: Any = None
    message: str = ""

    @property
    def is_pending(self) -> bool:
        return self.status is SaveStatus.PENDING


@dataclass(frozen=True)
class FetchResult(Generic[T]):
    """Read-side result; ``from_cache`` marks data served while the API was unreachable."""

    value: Optional[T]
    from_cache: bool = False


@dataclass
class DashboardSnapshot:
    """Everything the employee dashboard renders, gathered in one pass."""

    goals: list[Any] = field(default_factory=list)
    summary: Any = None
    performance: Any = None
    pip: Any = None
    contact: Any = None
    mode: SyncMode = SyncMode.ONLINE
    pending_mutations: int = 0
    from_cache: bool = False


@dataclass
class DrainReport:
    """Result of draining one outbox domain."""

    domain: SyncDomain
    replayed: int = 0
    dropped: int = 0
    remaining: int = 0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class SyncReport:
    """Result of a full "sync now" pass."""

    domains: dict[SyncDomain, DrainReport] = field(default_factory=dict)
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return all(report.succeeded for report in self.domains.values())

    @property
    def failed_domains(self) -> list[SyncDomain]:
        return [domain for domain, report in self.domains.items() if not report.succeeded]

    def to_dict(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "duration_ms": self.duration_ms,
            "domains": {
                str(domain): {
                    "replayed": report.replayed,
                    "dropped": report.dropped,
                    "remaining": report.remaining,
                    "error": report.error,
                }
                for domain, report in self.domains.items()
            },
        }
