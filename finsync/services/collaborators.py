"""Interfaces of the systems the sync engine talks to.

The engine never imports a concrete provider or database. It is handed
objects that satisfy these protocols, which keeps every engine test free of
network and database access.

All collaborators are synchronous clients (plaid-python and supabase-py are
both blocking); the engine calls them through ``asyncio.to_thread``.
"""

from datetime import date, datetime
from typing import Any, Protocol

from finsync.schemas.goal import Goal, GoalProgressEntry, GoalProgressResult
from finsync.schemas.plaid import Account, PlaidConnection
from finsync.schemas.sync import ProviderSyncOptions, SyncJob, SyncMetricRecord, SyncResult
from finsync.schemas.transaction import ConflictReviewRecord, Transaction


class ProviderClient(Protocol):
    """Fetches data from the upstream financial data provider."""

    def get_accounts(self, connection: PlaidConnection) -> list[Account]: ...

    def get_transactions(
        self,
        connection: PlaidConnection,
        start_date: date,
        end_date: date,
        account_ids: list[str] | None = None,
    ) -> list[Transaction]: ...

    def sync_transactions(
        self, connection: PlaidConnection, options: ProviderSyncOptions
    ) -> SyncResult: ...


class SyncStore(Protocol):
    """Local persistence: connections, balances, transactions, goals, history."""

    # Connections
    def get_active_connections(self, user_id: str) -> list[PlaidConnection]: ...

    def get_active_connection(
        self, connection_id: str, user_id: str
    ) -> PlaidConnection | None: ...

    def get_stale_connections(
        self, older_than: datetime, limit: int
    ) -> list[PlaidConnection]: ...

    def update_connection_last_sync(
        self, connection_id: str, synced_at: datetime
    ) -> None: ...

    # Accounts and transactions
    def upsert_accounts(self, accounts: list[Account]) -> None: ...

    def get_account_balances(
        self, user_id: str, account_ids: list[str]
    ) -> list[float | None]: ...

    def get_transactions_in_window(
        self, connection_id: str, start_date: date, end_date: date
    ) -> list[Transaction]: ...

    def upsert_transactions(self, transactions: list[Transaction]) -> None: ...

    # Conflict review queue
    def flag_transaction_conflict(self, record: ConflictReviewRecord) -> None: ...

    # Goals
    def get_active_goals(self, user_id: str) -> list[Goal]: ...

    def update_goal(self, goal_id: str, user_id: str, data: dict[str, Any]) -> None: ...

    def add_goal_progress(self, entry: GoalProgressEntry) -> None: ...

    # History
    def save_sync_job(self, job: SyncJob) -> None: ...

    def record_sync_metric(self, record: SyncMetricRecord) -> None: ...


class CacheInvalidator(Protocol):
    def invalidate_cache(self, user_id: str, scope: str) -> None: ...


class GoalProgressCalculator(Protocol):
    def calculate_multiple_goals_progress(
        self, goals: list[Goal]
    ) -> list[GoalProgressResult]: ...
