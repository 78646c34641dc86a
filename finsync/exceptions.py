"""Error taxonomy for the sync engine.

Every failure the engine reasons about is one of these classes. The scheduler
decides whether to retry by reading ``retryable`` instead of inspecting error
messages.
"""

from enum import Enum


class SyncError(Exception):
    """Base class for sync engine errors."""

    retryable: bool = True


class ProviderErrorKind(str, Enum):
    """Classification of data-provider failures."""

    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    SERVER = "server"
    ITEM_LOGIN_REQUIRED = "item_login_required"
    INVALID_REQUEST = "invalid_request"
    UNKNOWN = "unknown"


_NON_RETRYABLE_KINDS = {
    ProviderErrorKind.ITEM_LOGIN_REQUIRED,
    ProviderErrorKind.INVALID_REQUEST,
}


class ProviderError(SyncError):
    """The data provider failed (network, rate limit, bad credentials...)."""

    def __init__(
        self,
        message: str,
        kind: ProviderErrorKind = ProviderErrorKind.UNKNOWN,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.error_code = error_code

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.kind not in _NON_RETRYABLE_KINDS


class NoActiveConnectionsError(SyncError):
    """The job has no active connection to sync.

    Retryable: a connection may be re-linked before the next attempt.
    """


class PersistenceError(SyncError):
    """The local store rejected a read or write."""


class JobCancelledError(SyncError):
    """The job was cancelled before any connection was synced."""

    retryable = False


class ConflictReviewError(SyncError):
    """A conflict could not be queued for manual review. Never fatal."""

    retryable = False


class GoalCalculationError(SyncError):
    """Goal progress recalculation failed. Never fails the sync job."""

    retryable = False


def is_retryable(error: BaseException) -> bool:
    """Whether a failed job attempt should be re-queued.

    Unclassified exceptions are treated as transient.
    """
    if isinstance(error, SyncError):
        return error.retryable
    return True
