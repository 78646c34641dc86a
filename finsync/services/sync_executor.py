"""Sync executor - runs one sync job against the user's connections.

For every target connection:

1. Chooses a full sync (``force_refresh``) or an incremental sync.
2. Incremental: upserts account balances, loads stored transactions in the
   window, fetches the provider's transactions, reconciles conflicts and
   writes only new or changed records.
3. Full: delegates the 30-day refresh to the provider's ``sync_transactions``.
4. Records a per-connection metric row.

Then advances ``last_sync`` for the connections that succeeded, aggregates
the results, runs the goal progress step and invalidates the user's cache.
A job cancelled before its first connection raises ``JobCancelledError``
and touches nothing.
"""

import asyncio
import time
from datetime import datetime, timedelta

from finsync.exceptions import (
    ConflictReviewError,
    JobCancelledError,
    NoActiveConnectionsError,
    PersistenceError,
    ProviderError,
    SyncError,
)
from finsync.logging_config import get_logger
from finsync.schemas.goal import GoalProgressSummary
from finsync.schemas.plaid import PlaidConnection
from finsync.schemas.sync import (
    ProviderSyncOptions,
    SyncJob,
    SyncMetricRecord,
    SyncResult,
    SyncScheduleOptions,
    SyncType,
    utcnow,
)
from finsync.services.collaborators import CacheInvalidator, ProviderClient, SyncStore
from finsync.services.conflict_service import ConflictResolver
from finsync.services.goal_progress_service import GoalProgressService
from finsync.services.sync_results import merge_sync_results

logger = get_logger("sync_executor")


class SyncExecutor:
    """Executes sync jobs. Holds no job state of its own."""

    def __init__(
        self,
        provider: ProviderClient,
        store: SyncStore,
        cache: CacheInvalidator,
        goal_service: GoalProgressService,
        conflict_resolver: ConflictResolver,
        options: SyncScheduleOptions,
    ):
        self.provider = provider
        self.store = store
        self.cache = cache
        self.goal_service = goal_service
        self.conflict_resolver = conflict_resolver
        self.options = options

    async def execute(self, job: SyncJob) -> SyncResult:
        """
        Sync every target connection of a job.

        Args:
            job: The running job. Its ``status`` is re-read before each
                connection so a cancellation stops the loop.

        Returns:
            The aggregated result. A job cancelled part way returns what it
            synced, without the goal step.

        Raises:
            NoActiveConnectionsError: The job has nothing to sync.
            JobCancelledError: The job was cancelled before its first
                connection.
            PersistenceError: Connections could not be loaded.
            SyncError: Every processed connection failed; the first error is
                re-raised so the scheduler can retry.
        """
        connections = await self._load_connections(job)
        if not connections:
            raise NoActiveConnectionsError(
                f"No active connections found for user {job.user_id}"
            )

        results: list[SyncResult] = []
        failures: list[Exception] = []
        synced: list[tuple[PlaidConnection, datetime]] = []
        sync_type: SyncType = "full" if job.options.force_refresh else "incremental"

        for connection in connections:
            if job.status == "cancelled":
                logger.info(f"Sync job {job.id} cancelled, stopping before connection {connection.id}")
                break

            started = time.monotonic()
            try:
                if sync_type == "full":
                    result = await self.perform_full_sync(connection, job.options.account_ids)
                else:
                    result = await self.perform_incremental_sync(
                        connection, job.options.account_ids
                    )
            except Exception as e:
                message = (
                    f"{sync_type.capitalize()} sync failed for connection {connection.id}: {e}"
                )
                logger.error(message)
                failures.append(e)
                result = SyncResult.failure(message)
            else:
                if result.success:
                    synced.append((connection, result.last_sync_time))

            results.append(result)
            await self._record_metric(job, connection, sync_type, result, started)

        if not results:
            raise JobCancelledError(f"Sync job {job.id} cancelled before syncing any connection")
        if failures and len(failures) == len(results):
            raise failures[0]

        for connection, synced_at in synced:
            try:
                await self._call_store(
                    self.store.update_connection_last_sync, connection.id, synced_at
                )
            except PersistenceError as e:
                logger.error(f"Could not advance last_sync for connection {connection.id}: {e}")
                results.append(SyncResult.failure(str(e)))

        aggregated = merge_sync_results(results)

        if aggregated.success and job.status != "cancelled":
            summary = await self.calculate_goal_progress(job.user_id)
            aggregated.goals_updated = summary.goals_updated
            aggregated.goal_calculation_errors = summary.errors

        await self._invalidate_user_cache(job.user_id)
        return aggregated

    async def perform_incremental_sync(
        self,
        connection: PlaidConnection,
        account_ids: list[str] | None = None,
    ) -> SyncResult:
        """Sync the window since the connection's last successful sync."""
        window_end = utcnow()
        window_start = connection.last_sync or window_end - timedelta(
            hours=self.options.sync_window_hours
        )
        logger.info(
            f"Performing incremental sync for connection {connection.id} "
            f"from {window_start.isoformat()}"
        )

        accounts = await self._call_provider(self.provider.get_accounts, connection)
        if account_ids:
            accounts = [acc for acc in accounts if acc.plaid_account_id in account_ids]
        accounts = [
            acc.model_copy(update={"user_id": connection.user_id, "connection_id": connection.id})
            for acc in accounts
        ]
        if accounts:
            await self._call_store(self.store.upsert_accounts, accounts)

        existing = await self._call_store(
            self.store.get_transactions_in_window,
            connection.id,
            window_start.date(),
            window_end.date(),
        )
        incoming = await self._call_provider(
            self.provider.get_transactions,
            connection,
            window_start.date(),
            window_end.date(),
            account_ids,
        )
        incoming = [
            txn.model_copy(update={"user_id": connection.user_id, "connection_id": connection.id})
            for txn in incoming
        ]

        outcome = self.conflict_resolver.reconcile(existing, incoming)
        if outcome.to_upsert:
            await self._call_store(self.store.upsert_transactions, outcome.to_upsert)

        for record in outcome.pending_review:
            try:
                await self._flag_for_review(record)
            except ConflictReviewError as e:
                logger.warning(str(e))

        return SyncResult(
            success=True,
            accounts_updated=len(accounts),
            transactions_added=outcome.transactions_added,
            transactions_updated=outcome.transactions_updated,
            last_sync_time=window_end,
        )

    async def perform_full_sync(
        self,
        connection: PlaidConnection,
        account_ids: list[str] | None = None,
    ) -> SyncResult:
        """Re-pull the fixed recent window, overwriting local state."""
        end_date = utcnow()
        start_date = end_date - timedelta(days=self.options.full_sync_days)
        logger.info(f"Performing full sync for connection {connection.id}")

        result = await self._call_provider(
            self.provider.sync_transactions,
            connection,
            ProviderSyncOptions(
                force_refresh=True,
                account_ids=account_ids,
                start_date=start_date,
                end_date=end_date,
            ),
        )
        if result.errors:
            result.success = False
        return result

    async def calculate_goal_progress(self, user_id: str) -> GoalProgressSummary:
        try:
            return await asyncio.to_thread(self.goal_service.calculate_for_user, user_id)
        except Exception as e:
            logger.error(f"Goal progress calculation failed for user {user_id}: {e}")
            return GoalProgressSummary(errors=[str(e)])

    # --- Helpers ---

    async def _load_connections(self, job: SyncJob) -> list[PlaidConnection]:
        if job.connection_id:
            connection = await self._call_store(
                self.store.get_active_connection, job.connection_id, job.user_id
            )
            return [connection] if connection else []
        return await self._call_store(self.store.get_active_connections, job.user_id)

    async def _call_store(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except SyncError:
            raise
        except Exception as e:
            raise PersistenceError(f"{fn.__name__} failed: {e}") from e

    async def _call_provider(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except SyncError:
            raise
        except Exception as e:
            raise ProviderError(f"{fn.__name__} failed: {e}") from e

    async def _flag_for_review(self, record) -> None:
        try:
            await asyncio.to_thread(self.store.flag_transaction_conflict, record)
        except Exception as e:
            raise ConflictReviewError(
                f"Failed to flag transaction {record.transaction_id} for review: {e}"
            ) from e
        logger.info(
            f"Transaction {record.transaction_id} flagged for manual review: {record.conflict_type}"
        )

    async def _record_metric(
        self,
        job: SyncJob,
        connection: PlaidConnection,
        sync_type: SyncType,
        result: SyncResult,
        started: float,
    ) -> None:
        record = SyncMetricRecord(
            user_id=job.user_id,
            connection_id=connection.id,
            sync_type=sync_type,
            accounts_updated=result.accounts_updated,
            transactions_added=result.transactions_added,
            transactions_updated=result.transactions_updated,
            sync_duration_ms=int((time.monotonic() - started) * 1000),
            success=result.success,
            error_count=len(result.errors),
        )
        try:
            await asyncio.to_thread(self.store.record_sync_metric, record)
        except Exception as e:
            logger.warning(f"Failed to record sync metric for connection {connection.id}: {e}")

    async def _invalidate_user_cache(self, user_id: str) -> None:
        try:
            await asyncio.to_thread(self.cache.invalidate_cache, user_id, "all")
        except Exception as e:
            logger.warning(f"Failed to invalidate caches for user {user_id}: {e}")
