"""Sync router - trigger and monitor sync jobs."""

from fastapi import APIRouter, Depends, HTTPException, status

from finsync.dependencies import get_current_user_id, get_sync_engine
from finsync.schemas.common import SuccessResponse
from finsync.schemas.goal import GoalProgressSummary
from finsync.schemas.sync import (
    SyncJobOptions,
    SyncJobResponse,
    SyncMetrics,
    SyncTriggerRequest,
    SyncTriggerResponse,
)
from finsync.services.sync_engine import DataSyncEngine


router = APIRouter(prefix="/sync", tags=["Sync"])


def _get_owned_job(engine: DataSyncEngine, job_id: str, user_id: str):
    job = engine.get_sync_job_status(job_id)
    if job is None or job.user_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Sync job not found",
        )
    return job


@router.post(
    "/trigger",
    response_model=SyncTriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_sync(
    request: SyncTriggerRequest | None = None,
    user_id: str = Depends(get_current_user_id),
    engine: DataSyncEngine = Depends(get_sync_engine),
):
    """Queue a high-priority sync for the current user."""
    request = request or SyncTriggerRequest()
    try:
        job_id = await engine.queue_sync(
            SyncJobOptions(
                user_id=user_id,
                connection_id=request.connection_id,
                account_ids=request.account_ids,
                force_refresh=request.force_refresh,
                priority="high",
                max_retries=engine.options.default_max_retries,
            )
        )
    except RuntimeError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e),
        )

    job = engine.get_sync_job_status(job_id)
    return SyncTriggerResponse(
        job_id=job_id,
        status=job.status if job else "queued",
        message="Sync queued",
    )


@router.get("/status/{job_id}", response_model=SyncJobResponse)
async def get_sync_job(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: DataSyncEngine = Depends(get_sync_engine),
):
    """Get a specific sync job."""
    job = _get_owned_job(engine, job_id, user_id)
    return SyncJobResponse.from_job(job)


@router.post("/cancel/{job_id}", response_model=SuccessResponse)
async def cancel_sync_job(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: DataSyncEngine = Depends(get_sync_engine),
):
    """Cancel a queued or running sync job."""
    _get_owned_job(engine, job_id, user_id)

    if not await engine.cancel_sync_job(job_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Sync job already finished",
        )

    return SuccessResponse(message="Sync job cancelled", data={"job_id": job_id})


@router.get("/metrics", response_model=SyncMetrics)
async def get_sync_metrics(
    user_id: str = Depends(get_current_user_id),
    engine: DataSyncEngine = Depends(get_sync_engine),
):
    """Engine-wide sync counters."""
    return engine.get_sync_metrics()


@router.post("/goals/calculate", response_model=GoalProgressSummary)
async def calculate_goal_progress(
    user_id: str = Depends(get_current_user_id),
    engine: DataSyncEngine = Depends(get_sync_engine),
):
    """Recalculate automatic goal progress for the current user."""
    return await engine.calculate_goal_progress(user_id)
