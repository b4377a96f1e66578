"""
Offline Sync Enums.

Connectivity mode, outbox vocabulary and caller-facing outcomes.
"""

from enum import Enum


class SyncMode(str, Enum):
    """
    The coordinator's belief about current connectivity.

    - ONLINE: every operation attempts the remote API first.
    - OFFLINE: reads come from the local cache; mutations are queued
      without a network attempt until a sync succeeds.
    """

    ONLINE = "online"
    OFFLINE = "offline"

    def __str__(self) -> str:
        return self.value


class SyncDomain(str, Enum):
    """Independent aggregates that own an outbox partition."""

    GOALS = "goals"
    QUERIES = "queries"
    FEEDBACK = "feedback"
    CONTACT = "contact"

    def __str__(self) -> str:
        return self.value


class OutboxOperation(str, Enum):
    """Kind of mutation recorded in an outbox entry."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    TOGGLE = "toggle"

    def __str__(self) -> str:
        return self.value


class DraftStatus(str, Enum):
    """Lifecycle of a self-appraisal document."""

    DRAFT = "draft"
    SUBMITTED = "submitted"

    def __str__(self) -> str:
        return self.value


class SaveStatus(str, Enum):
    """
    What a caller learns about a mutation.

    - SAVED: confirmed by the server.
    - PENDING: accepted locally, will sync later.
    """

    SAVED = "saved"
    PENDING = "pending"

    def __str__(self) -> str:
        return self.value


class DraftOutcome(str, Enum):
    """Result of a draft save or submit attempt."""

    SAVED = "saved"
    DEFERRED = "deferred"
    SUBMITTED = "submitted"

    def __str__(self) -> str:
        return self.value
