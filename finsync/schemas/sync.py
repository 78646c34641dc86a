"""Sync job schemas."""

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from finsync.config import Settings


SyncPriority = Literal["low", "normal", "high"]
JobStatus = Literal["queued", "running", "completed", "failed", "cancelled"]
SyncType = Literal["full", "incremental"]
ConflictStrategy = Literal["plaid_wins", "database_wins", "merge", "manual"]

TERMINAL_STATUSES = ("completed", "failed", "cancelled")

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncOptions(BaseModel):
    """Options accepted by ``sync_user_data``."""

    connection_id: str | None = None
    account_ids: list[str] | None = None
    force_refresh: bool = False


class SyncJobOptions(BaseModel):
    """Everything needed to create a sync job."""

    user_id: str
    connection_id: str | None = None
    account_ids: list[str] | None = None
    force_refresh: bool = False
    priority: SyncPriority = "normal"
    max_retries: int = Field(default=3, ge=0)


class ProviderSyncOptions(BaseModel):
    """Window and filters handed to the provider for a full refresh."""

    force_refresh: bool = False
    account_ids: list[str] | None = None
    start_date: datetime
    end_date: datetime


class SyncResult(BaseModel):
    """Outcome of one sync attempt, per connection or aggregated per job."""

    success: bool = True
    accounts_updated: int = Field(default=0, ge=0)
    transactions_added: int = Field(default=0, ge=0)
    transactions_updated: int = Field(default=0, ge=0)
    goals_updated: int | None = None
    goal_calculation_errors: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    last_sync_time: datetime = Field(default_factory=utcnow)

    @classmethod
    def failure(cls, message: str) -> "SyncResult":
        return cls(success=False, errors=[message])


class SyncJob(BaseModel):
    """A unit of scheduled sync work."""

    id: str
    user_id: str
    connection_id: str | None = None
    options: SyncJobOptions
    status: JobStatus = "queued"
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: SyncResult | None = None
    error: str | None = None
    retry_count: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class SyncMetrics(BaseModel):
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    average_sync_time: float = 0.0  # milliseconds
    last_sync_time: datetime | None = None
    active_jobs: int = 0
    queued_jobs: int = 0


class SyncMetricRecord(BaseModel):
    """Per-connection performance row written to the ``sync_metrics`` table."""

    user_id: str
    connection_id: str
    sync_type: SyncType
    accounts_updated: int = 0
    transactions_added: int = 0
    transactions_updated: int = 0
    sync_duration_ms: int
    success: bool
    error_count: int = 0


class SyncScheduleOptions(BaseModel):
    """Tuning knobs for the sync engine."""

    interval_seconds: float = Field(default=15 * 60, gt=0)
    max_concurrent_jobs: int = Field(default=3, ge=1)
    sync_window_hours: int = Field(default=72, ge=1)
    full_sync_days: int = Field(default=30, ge=1)
    stale_batch_size: int = Field(default=10, ge=1)
    background_max_retries: int = Field(default=2, ge=0)
    default_max_retries: int = Field(default=3, ge=0)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    shutdown_timeout_seconds: float = Field(default=30.0, ge=0)
    job_retention_hours: float = Field(default=24.0, gt=0)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "SyncScheduleOptions":
        return cls(
            interval_seconds=settings.sync_interval_seconds,
            max_concurrent_jobs=settings.sync_max_concurrent_jobs,
            sync_window_hours=settings.sync_window_hours,
            full_sync_days=settings.full_sync_days,
            stale_batch_size=settings.stale_batch_size,
            background_max_retries=settings.background_max_retries,
            default_max_retries=settings.default_max_retries,
            retry_base_delay_seconds=settings.retry_base_delay_seconds,
            shutdown_timeout_seconds=settings.shutdown_timeout_seconds,
            job_retention_hours=settings.job_retention_hours,
        )


# --- API ---


class SyncTriggerRequest(BaseModel):
    """Body of a manual sync trigger."""

    connection_id: str | None = None
    account_ids: list[str] | None = None
    force_refresh: bool = False


class SyncTriggerResponse(BaseModel):
    """Response after triggering a sync."""

    job_id: str
    status: JobStatus
    message: str


class SyncJobResponse(BaseModel):
    """Single sync job status."""

    id: str
    connection_id: str | None
    status: JobStatus
    priority: SyncPriority
    retry_count: int
    max_retries: int
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    error: str | None
    result: SyncResult | None

    @classmethod
    def from_job(cls, job: SyncJob) -> "SyncJobResponse":
        return cls(
            id=job.id,
            connection_id=job.connection_id,
            status=job.status,
            priority=job.options.priority,
            retry_count=job.retry_count,
            max_retries=job.options.max_retries,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            error=job.error,
            result=job.result,
        )
