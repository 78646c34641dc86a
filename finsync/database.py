"""Supabase client setup and the sync engine's store."""

from datetime import date, datetime
from functools import lru_cache
from typing import Any

from supabase import Client, create_client

from finsync.config import get_settings
from finsync.schemas.goal import Goal, GoalProgressEntry
from finsync.schemas.plaid import Account, PlaidConnection
from finsync.schemas.sync import SyncJob, SyncMetricRecord, utcnow
from finsync.schemas.transaction import ConflictReviewRecord, Transaction


@lru_cache
def get_supabase_client() -> Client:
    """Get cached Supabase client instance using the service key.

    The engine writes on behalf of every user, so it bypasses RLS and
    authorization is handled at the application level.
    """
    settings = get_settings()
    return create_client(settings.supabase_url, settings.supabase_secret_key)


class Database:
    """Supabase-backed implementation of ``SyncStore``."""

    def __init__(self, client: Client):
        self.client = client

    # --- Connections ---

    def get_active_connections(self, user_id: str) -> list[PlaidConnection]:
        result = (
            self.client.table("plaid_connections")
            .select("*")
            .eq("user_id", user_id)
            .eq("status", "active")
            .execute()
        )
        return [PlaidConnection.model_validate(row) for row in result.data]

    def get_active_connection(self, connection_id: str, user_id: str) -> PlaidConnection | None:
        result = (
            self.client.table("plaid_connections")
            .select("*")
            .eq("id", connection_id)
            .eq("user_id", user_id)
            .eq("status", "active")
            .execute()
        )
        return PlaidConnection.model_validate(result.data[0]) if result.data else None

    def get_stale_connections(self, older_than: datetime, limit: int) -> list[PlaidConnection]:
        """Active connections never synced or last synced before ``older_than``, oldest first."""
        result = (
            self.client.table("plaid_connections")
            .select("*")
            .eq("status", "active")
            .or_(f"last_sync.is.null,last_sync.lt.{older_than.isoformat()}")
            .order("last_sync", desc=False, nullsfirst=True)
            .limit(limit)
            .execute()
        )
        return [PlaidConnection.model_validate(row) for row in result.data]

    def update_connection_last_sync(self, connection_id: str, synced_at: datetime) -> None:
        self.client.table("plaid_connections").update(
            {
                "last_sync": synced_at.isoformat(),
                "updated_at": utcnow().isoformat(),
            }
        ).eq("id", connection_id).execute()

    # --- Accounts ---

    def upsert_accounts(self, accounts: list[Account]) -> None:
        if not accounts:
            return
        now = utcnow().isoformat()
        rows = [{**acc.model_dump(mode="json"), "last_updated": now} for acc in accounts]
        self.client.table("accounts").upsert(
            rows, on_conflict="user_id,plaid_account_id"
        ).execute()

    def get_account_balances(self, user_id: str, account_ids: list[str]) -> list[float | None]:
        """Current balances of the user's accounts with the given Plaid ids."""
        if not account_ids:
            return []
        result = (
            self.client.table("accounts")
            .select("balance_current")
            .eq("user_id", user_id)
            .in_("plaid_account_id", account_ids)
            .execute()
        )
        return [row["balance_current"] for row in result.data]

    # --- Transactions ---

    def get_transactions_in_window(
        self, connection_id: str, start_date: date, end_date: date
    ) -> list[Transaction]:
        result = (
            self.client.table("transactions")
            .select("*")
            .eq("connection_id", connection_id)
            .gte("date", start_date.isoformat())
            .lte("date", end_date.isoformat())
            .execute()
        )
        return [Transaction.model_validate(row) for row in result.data]

    def upsert_transactions(self, transactions: list[Transaction]) -> None:
        if not transactions:
            return
        now = utcnow().isoformat()
        rows = [{**txn.model_dump(mode="json"), "updated_at": now} for txn in transactions]
        self.client.table("transactions").upsert(
            rows, on_conflict="user_id,plaid_transaction_id"
        ).execute()

    # --- Conflict review ---

    def flag_transaction_conflict(self, record: ConflictReviewRecord) -> None:
        row = record.model_dump(mode="json")
        row["updated_at"] = utcnow().isoformat()
        self.client.table("transaction_conflicts").upsert(
            row, on_conflict="transaction_id"
        ).execute()

    # --- Goals ---

    def get_active_goals(self, user_id: str) -> list[Goal]:
        result = (
            self.client.table("goals")
            .select("*")
            .eq("user_id", user_id)
            .eq("status", "active")
            .order("created_at", desc=False)
            .execute()
        )
        return [Goal.model_validate(row) for row in result.data]

    def update_goal(self, goal_id: str, user_id: str, data: dict[str, Any]) -> None:
        self.client.table("goals").update(
            {**data, "updated_at": utcnow().isoformat()}
        ).eq("id", goal_id).eq("user_id", user_id).execute()

    def add_goal_progress(self, entry: GoalProgressEntry) -> None:
        self.client.table("goal_progress").insert(entry.model_dump(mode="json")).execute()

    # --- Sync history ---

    def save_sync_job(self, job: SyncJob) -> None:
        self.client.table("sync_jobs").upsert(
            {
                "id": job.id,
                "user_id": job.user_id,
                "connection_id": job.connection_id,
                "status": job.status,
                "priority": job.options.priority,
                "options": job.options.model_dump(mode="json"),
                "result": job.result.model_dump(mode="json") if job.result else None,
                "error_message": job.error,
                "retry_count": job.retry_count,
                "max_retries": job.options.max_retries,
                "created_at": job.created_at.isoformat(),
                "started_at": job.started_at.isoformat() if job.started_at else None,
                "completed_at": job.completed_at.isoformat() if job.completed_at else None,
            },
            on_conflict="id",
        ).execute()

    def record_sync_metric(self, record: SyncMetricRecord) -> None:
        self.client.table("sync_metrics").insert(record.model_dump(mode="json")).execute()
