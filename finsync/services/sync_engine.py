"""Background sync engine: job queue, scheduler, retries, scanner and metrics.

One ``DataSyncEngine`` owns all scheduling state (queue, running set, job
map, counters). Mutations of that state happen under a single
``asyncio.Lock`` that is never held across I/O.

Dispatch picks the highest-priority queued job, oldest first, whenever a
running slot is free. A failed attempt is re-queued at the front of the
queue after ``retry_base_delay_seconds * 2 ** retry_count`` seconds until
``max_retries`` is exhausted. Cancellation is cooperative: a running job
stops at the next connection boundary.
"""

import asyncio
import contextlib
import time
import uuid
from datetime import timedelta

from finsync.exceptions import JobCancelledError, is_retryable
from finsync.logging_config import get_logger
from finsync.schemas.goal import GoalProgressSummary
from finsync.schemas.sync import (
    ConflictStrategy,
    SyncJob,
    SyncJobOptions,
    SyncMetrics,
    SyncOptions,
    SyncResult,
    SyncScheduleOptions,
    utcnow,
)
from finsync.services.cache_service import LoggingCacheInvalidator
from finsync.services.collaborators import (
    CacheInvalidator,
    GoalProgressCalculator,
    ProviderClient,
    SyncStore,
)
from finsync.services.conflict_service import ConflictResolver
from finsync.services.goal_progress_service import GoalProgressService
from finsync.services.sync_executor import SyncExecutor

logger = get_logger("sync_engine")

PRIORITY_RANK = {"high": 0, "normal": 1, "low": 2}


class DataSyncEngine:
    """Queues, runs, retries and reports on sync jobs."""

    def __init__(
        self,
        provider: ProviderClient,
        store: SyncStore,
        cache: CacheInvalidator | None = None,
        goal_calculator: GoalProgressCalculator | None = None,
        options: SyncScheduleOptions | None = None,
        conflict_strategy: ConflictStrategy = "plaid_wins",
    ):
        self.options = options or SyncScheduleOptions()
        self.store = store
        self.executor = SyncExecutor(
            provider=provider,
            store=store,
            cache=cache or LoggingCacheInvalidator(),
            goal_service=GoalProgressService(store, goal_calculator),
            conflict_resolver=ConflictResolver(conflict_strategy),
            options=self.options,
        )

        self._jobs: dict[str, SyncJob] = {}
        self._queue: list[SyncJob] = []
        self._active: dict[str, asyncio.Task] = {}
        self._retry_tasks: set[asyncio.Task] = set()
        self._finished: dict[str, asyncio.Event] = {}
        self._lock = asyncio.Lock()
        self._closing = False

        self._metrics = SyncMetrics()

        self._scanner_task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None

    # --- Public API ---

    async def queue_sync(self, options: SyncJobOptions) -> str:
        """Queue a sync job for background processing and return its id."""
        if self._closing:
            raise RuntimeError("Sync engine is shutting down")
        job = self._create_job(options)
        async with self._lock:
            self._queue.append(job)
            self._dispatch()
        logger.info(
            f"Queued sync job {job.id} for user {job.user_id} (priority={options.priority})"
        )
        return job.id

    async def sync_user_data(
        self, user_id: str, options: SyncOptions | None = None
    ) -> SyncResult:
        """
        Sync a user's data now and wait for the outcome.

        The job runs through the queue at high priority, ahead of every queued
        background job, and makes a single attempt: a failure is returned to
        the caller instead of waiting out retry backoff. It still respects the
        concurrency cap, so it can wait for a running job to free a slot.
        """
        options = options or SyncOptions()
        job_id = await self.queue_sync(
            SyncJobOptions(
                user_id=user_id,
                connection_id=options.connection_id,
                account_ids=options.account_ids,
                force_refresh=options.force_refresh,
                priority="high",
                max_retries=0,
            )
        )
        job = await self.wait_for_job(job_id)
        if job is not None and job.result is not None:
            return job.result
        error = job.error if job is not None and job.error else "Sync job did not complete"
        return SyncResult.failure(error)

    def get_sync_job_status(self, job_id: str) -> SyncJob | None:
        return self._jobs.get(job_id)

    async def wait_for_job(self, job_id: str, timeout: float | None = None) -> SyncJob | None:
        """
        Wait until a job has finished. Returns None for unknown jobs.

        A running job flagged as cancelled is only finished once its current
        connection completes.
        """
        job = self._jobs.get(job_id)
        if job is None:
            return None
        event = self._finished.get(job_id)
        if event is not None:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        return job

    async def cancel_sync_job(self, job_id: str) -> bool:
        """
        Cancel a queued or running job.

        A queued job leaves the queue immediately. A running job is only
        flagged; the executor stops before its next connection.
        """
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False

            if job.status == "running":
                job.status = "cancelled"
                logger.info(f"Cancellation requested for running sync job {job_id}")
                return True

            if job.status != "queued":
                return False

            if job in self._queue:
                self._queue.remove(job)
            job.status = "cancelled"
            job.error = "Sync job cancelled"
            job.completed_at = utcnow()
            logger.info(f"Cancelled queued sync job {job_id}")

        await self._save_history(job)
        self._finish(job)
        return True

    def get_sync_metrics(self) -> SyncMetrics:
        return self._metrics.model_copy(
            update={"active_jobs": len(self._active), "queued_jobs": len(self._queue)}
        )

    async def calculate_goal_progress(self, user_id: str) -> GoalProgressSummary:
        """Manually trigger goal progress calculation for a user."""
        logger.info(f"Manual goal progress calculation requested for user {user_id}")
        return await self.executor.calculate_goal_progress(user_id)

    def cleanup_old_jobs(self, older_than: timedelta | None = None) -> int:
        """Forget terminal jobs created before the retention window."""
        if older_than is None:
            older_than = timedelta(hours=self.options.job_retention_hours)
        cutoff = utcnow() - older_than

        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.is_terminal and job_id not in self._active and job.created_at < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
            self._finished.pop(job_id, None)

        if expired:
            logger.info(f"Removed {len(expired)} expired sync jobs")
        return len(expired)

    # --- Staleness scanner ---

    def start_background_sync(self) -> None:
        """Start the periodic staleness scanner. Must be called from a running loop."""
        if self._scanner_task is not None and not self._scanner_task.done():
            return
        self._stop_event = asyncio.Event()
        self._scanner_task = asyncio.create_task(self._scanner_loop(self._stop_event))
        logger.info(f"Background sync started with {self.options.interval_seconds}s interval")

    async def stop_background_sync(self) -> None:
        if self._scanner_task is None:
            return
        self._stop_event.set()
        self._scanner_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._scanner_task
        self._scanner_task = None
        logger.info("Background sync stopped")

    async def schedule_background_syncs(self) -> list[str]:
        """Queue low-priority jobs for connections overdue for a sync."""
        cutoff = utcnow() - timedelta(seconds=self.options.interval_seconds)
        try:
            stale = await asyncio.to_thread(
                self.store.get_stale_connections, cutoff, self.options.stale_batch_size
            )
        except Exception as e:
            logger.error(f"Failed to schedule background syncs: {e}")
            return []

        job_ids = []
        for connection in stale:
            if self._has_pending_job(connection.id):
                continue
            job_id = await self.queue_sync(
                SyncJobOptions(
                    user_id=connection.user_id,
                    connection_id=connection.id,
                    priority="low",
                    max_retries=self.options.background_max_retries,
                )
            )
            job_ids.append(job_id)

        if job_ids:
            logger.info(f"Scheduled {len(job_ids)} background syncs")
        return job_ids

    async def _scanner_loop(self, stop_event: asyncio.Event) -> None:
        while True:
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.options.interval_seconds)
                return
            except asyncio.TimeoutError:
                pass

            try:
                await self.schedule_background_syncs()
            except Exception:
                logger.exception("Background sync scheduler error")

    # --- Shutdown ---

    async def shutdown(self) -> None:
        """
        Stop scanning, let running jobs finish, then cancel stragglers.

        No new job is dispatched once shutdown starts. Jobs still waiting in
        the queue or in retry backoff are cancelled.
        """
        logger.info("Shutting down data sync service...")
        self._closing = True
        await self.stop_background_sync()

        for task in list(self._retry_tasks):
            task.cancel()
        for job in list(self._jobs.values()):
            if job.status == "queued":
                await self.cancel_sync_job(job.id)

        running = list(self._active.values())
        if running:
            _, pending = await asyncio.wait(
                running, timeout=self.options.shutdown_timeout_seconds
            )
            for job_id, task in list(self._active.items()):
                if task in pending:
                    await self.cancel_sync_job(job_id)
                    task.cancel()
            if pending:
                await asyncio.wait(pending)

        logger.info("Data sync service shutdown complete")

    # --- Scheduling internals ---

    def _create_job(self, options: SyncJobOptions) -> SyncJob:
        job = SyncJob(
            id=f"sync_{uuid.uuid4().hex}",
            user_id=options.user_id,
            connection_id=options.connection_id,
            options=options,
        )
        self._jobs[job.id] = job
        self._finished[job.id] = asyncio.Event()
        return job

    def _has_pending_job(self, connection_id: str) -> bool:
        # A cancelled job keeps running until its current connection finishes
        return any(
            job.connection_id == connection_id
            and (job.status in ("queued", "running") or job.id in self._active)
            for job in self._jobs.values()
        )

    def _next_job(self) -> SyncJob:
        # min() keeps the first of equal keys, so front-inserted retries win ties
        return min(
            self._queue,
            key=lambda job: (PRIORITY_RANK[job.options.priority], job.created_at),
        )

    def _dispatch(self) -> None:
        """Start queued jobs while slots are free. Caller holds the lock."""
        if self._closing:
            return
        while self._queue and len(self._active) < self.options.max_concurrent_jobs:
            job = self._next_job()
            self._queue.remove(job)
            if job.status != "queued":
                continue
            job.status = "running"
            job.started_at = utcnow()
            self._active[job.id] = asyncio.create_task(self._run_job(job))

    async def _run_job(self, job: SyncJob) -> None:
        logger.info(f"Starting sync job {job.id} for user {job.user_id}")
        started = time.monotonic()
        try:
            try:
                result = await self.executor.execute(job)
            except asyncio.CancelledError:
                job.status = "cancelled"
                job.error = job.error or "Sync job cancelled during shutdown"
                job.completed_at = utcnow()
                logger.warning(f"Sync job {job.id} cancelled during shutdown")
                await self._save_history(job)
                raise
            except JobCancelledError:
                await self._handle_cancelled(job)
            except Exception as e:
                self._record_attempt(started, succeeded=False)
                await self._handle_failure(job, e)
            else:
                # A cancelled job that synced some connections is not a successful attempt
                if job.status != "cancelled":
                    self._record_attempt(started, succeeded=True)
                await self._handle_success(job, result)
        finally:
            if job.is_terminal:
                self._finish(job)
            async with self._lock:
                self._active.pop(job.id, None)
                self._dispatch()

    async def _handle_success(self, job: SyncJob, result: SyncResult) -> None:
        job.result = result
        job.completed_at = utcnow()
        if job.status == "cancelled":
            logger.info(f"Sync job {job.id} stopped after cancellation")
        else:
            job.status = "completed"
            self._metrics.last_sync_time = job.completed_at
            logger.info(f"Sync job {job.id} completed (success={result.success})")
        await self._save_history(job)
        self._finish(job)

    async def _handle_cancelled(self, job: SyncJob) -> None:
        job.status = "cancelled"
        job.error = job.error or "Sync job cancelled"
        job.completed_at = utcnow()
        logger.info(f"Sync job {job.id} cancelled before syncing any connection")
        await self._save_history(job)
        self._finish(job)

    async def _handle_failure(self, job: SyncJob, error: Exception) -> None:
        message = str(error) or error.__class__.__name__
        job.error = message

        if job.status == "cancelled":
            job.completed_at = utcnow()
            await self._save_history(job)
            self._finish(job)
            return

        if (
            not self._closing
            and is_retryable(error)
            and job.retry_count < job.options.max_retries
        ):
            job.retry_count += 1
            job.status = "queued"
            job.error = None
            delay = self.options.retry_base_delay_seconds * 2 ** job.retry_count
            logger.warning(
                f"Sync job {job.id} failed ({message}), retrying in {delay:.2f}s "
                f"(attempt {job.retry_count}/{job.options.max_retries})"
            )
            task = asyncio.create_task(self._requeue_after(job, delay))
            self._retry_tasks.add(task)
            task.add_done_callback(self._retry_tasks.discard)
            return

        job.status = "failed"
        job.completed_at = utcnow()
        logger.error(f"Sync job {job.id} failed permanently: {message}")
        await self._save_history(job)
        self._finish(job)

    async def _requeue_after(self, job: SyncJob, delay: float) -> None:
        await asyncio.sleep(delay)
        async with self._lock:
            if job.status != "queued":
                return
            self._queue.insert(0, job)
            self._dispatch()

    def _record_attempt(self, started: float, succeeded: bool) -> None:
        elapsed_ms = (time.monotonic() - started) * 1000
        metrics = self._metrics
        metrics.total_syncs += 1
        if succeeded:
            metrics.successful_syncs += 1
        else:
            metrics.failed_syncs += 1
        metrics.average_sync_time += (elapsed_ms - metrics.average_sync_time) / metrics.total_syncs

    def _finish(self, job: SyncJob) -> None:
        event = self._finished.get(job.id)
        if event is not None:
            event.set()

    async def _save_history(self, job: SyncJob) -> None:
        # Shielded so a shutdown cancel does not drop the row mid-write
        try:
            await asyncio.shield(asyncio.to_thread(self.store.save_sync_job, job))
        except Exception as e:
            logger.warning(f"Failed to save sync job {job.id} history: {e}")
