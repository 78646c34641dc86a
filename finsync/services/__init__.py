"""Business logic services."""

from finsync.services.conflict_service import ConflictResolver
from finsync.services.goal_progress_service import (
    AccountBalanceGoalCalculator,
    GoalProgressService,
)
from finsync.services.sync_engine import DataSyncEngine
from finsync.services.sync_executor import SyncExecutor

__all__ = [
    "AccountBalanceGoalCalculator",
    "ConflictResolver",
    "DataSyncEngine",
    "GoalProgressService",
    "SyncExecutor",
]
