"""
Offline sync exceptions.

Only validation and authentication failures ever reach UI callers;
connectivity problems are absorbed into pending/deferred outcomes.
"""


class SyncError(Exception):
    """Base exception for sync-layer errors."""
    pass


class SyncConfigurationError(SyncError):
    """Raised when the sync layer is wired up without required collaborators."""
    pass


class InvalidInputError(SyncError):
    """
    Raised when user input fails local validation.

    No network call is attempted for invalid input.

    Examples:
        - Empty goal text or contact number
        - Rating weightage outside 0-100 or score outside 1-5
        - Submitting an appraisal with no ratings
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class AuthenticationError(SyncError):
    """
    Raised when the API rejects the session token (401/403).

    The session-expired handler has already been notified when this is raised.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class CacheConflictError(SyncError):
    """Raised when a compare-and-swap write keeps losing to another writer."""

    def __init__(self, message: str, key: str | None = None) -> None:
        self.key = key
        super().__init__(message)
