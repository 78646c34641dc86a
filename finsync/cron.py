"""Scheduled cron jobs for background tasks."""

from fastapi_utils.tasks import repeat_every

from finsync.logging_config import get_logger
from finsync.services.sync_engine import DataSyncEngine

logger = get_logger("cron")


def schedule_job_cleanup(engine: DataSyncEngine, seconds: float):
    """
    Build the periodic task that forgets expired sync jobs.

    Call the returned coroutine function once at startup; ``repeat_every``
    keeps it running in the background.
    """

    @repeat_every(seconds=seconds)
    async def cleanup_expired_sync_jobs():
        logger.info("[CRON] Cleaning up expired sync jobs...")
        try:
            removed = engine.cleanup_old_jobs()
            logger.info(f"[CRON] Job cleanup complete: {removed} removed")
        except Exception:
            logger.exception("[CRON] Job cleanup failed")

    return cleanup_expired_sync_jobs
