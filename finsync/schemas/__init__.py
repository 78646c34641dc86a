"""Pydantic schemas for the sync engine and its API."""

from finsync.schemas.common import ErrorResponse, SuccessResponse
from finsync.schemas.goal import (
    Goal,
    GoalProgressEntry,
    GoalProgressResult,
    GoalProgressSummary,
)
from finsync.schemas.plaid import Account, PlaidConnection
from finsync.schemas.sync import (
    ProviderSyncOptions,
    SyncJob,
    SyncJobOptions,
    SyncJobResponse,
    SyncMetrics,
    SyncOptions,
    SyncResult,
    SyncScheduleOptions,
    SyncTriggerRequest,
    SyncTriggerResponse,
)
from finsync.schemas.transaction import (
    ConflictReviewRecord,
    Transaction,
    TransactionConflict,
)

__all__ = [
    # Common
    "SuccessResponse",
    "ErrorResponse",
    # Connections
    "PlaidConnection",
    "Account",
    "Transaction",
    "TransactionConflict",
    "ConflictReviewRecord",
    # Goals
    "Goal",
    "GoalProgressEntry",
    "GoalProgressResult",
    "GoalProgressSummary",
    # Sync
    "ProviderSyncOptions",
    "SyncJob",
    "SyncJobOptions",
    "SyncJobResponse",
    "SyncMetrics",
    "SyncOptions",
    "SyncResult",
    "SyncScheduleOptions",
    "SyncTriggerRequest",
    "SyncTriggerResponse",
]
