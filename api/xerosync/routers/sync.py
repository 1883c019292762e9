import json
import logging
import uuid
from datetime import datetime, timezone

from celery.result import AsyncResult
from fastapi import APIRouter, Depends, HTTPException, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from xerosync.core.config import settings
from xerosync.core.database import get_db
from xerosync.core.redis import acquire_enqueue_lock, get_redis, release_enqueue_lock
from xerosync.core.security import encrypt_value
from xerosync.models.sync_log import SyncLog
from xerosync.schemas.sync import (
    DEFAULT_LIMITS,
    CheckpointStatusResponse,
    HistoricalSyncRequest,
    JobStatusResponse,
    SyncEnqueueResponse,
    SyncJob,
    SyncProgress,
)
from xerosync.services.checkpoint import CheckpointStore
from xerosync.services.historical_sync import plan_phases, run_historical_sync
from xerosync.services.progress import load_progress
from xerosync.worker import celery_app

logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address, storage_uri=settings.rate_limit_storage_url)

router = APIRouter(prefix="/xero", tags=["xero-sync"])
queue_router = APIRouter(prefix="/queue", tags=["queue"])


# ─── Historical sync ───────────────────────────────────────────────────────

def _job_parameters(payload: HistoricalSyncRequest) -> str:
    """What a sync id was queued to do, as stored on its log row. A resume must match it."""
    plan = plan_phases(payload.entities)
    limits = {e: payload.limits.get(e, DEFAULT_LIMITS.get(e)) for e in plan}
    return json.dumps(
        {
            "entities": [e.value for e in plan],
            "sync_from_date": payload.sync_from_date.isoformat(),
            "limits": {e.value: n for e, n in limits.items() if n is not None},
        },
        sort_keys=True,
    )


@router.post("/sync", response_model=SyncEnqueueResponse, status_code=202)
@limiter.limit("5/minute")
async def start_historical_sync(
    request: Request,
    payload: HistoricalSyncRequest,
    db: AsyncSession = Depends(get_db),
    r=Depends(get_redis),
):
    """Queue a historical sync. Passing the `sync_id` of a failed sync resumes it."""
    parameters = _job_parameters(payload)
    if payload.sync_id is not None:
        log = await db.get(SyncLog, payload.sync_id)
        if log is None:
            raise HTTPException(status_code=404, detail="Sync not found")
        if log.tenant_id != payload.tenant_id or log.user_id != payload.user_id:
            raise HTTPException(status_code=400, detail="Sync belongs to a different user or tenant")
        if log.status == "success":
            raise HTTPException(status_code=409, detail="Sync already completed")
        if log.parameters is not None and log.parameters != parameters:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="A resumed sync must use its original entities, sync_from_date and limits",
            )
        sync_id = log.id
    else:
        sync_id = uuid.uuid4()
        log = SyncLog(
            id=sync_id,
            user_id=payload.user_id,
            tenant_id=payload.tenant_id,
            sync_type="historical",
        )
        db.add(log)

    if not await acquire_enqueue_lock(r, str(sync_id), settings.sync_enqueue_lock_seconds):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This sync is already queued or running",
        )

    log.status = "in_progress"
    log.error_message = None
    log.completed_at = None
    log.parameters = parameters
    # The worker may pick the job up immediately; the log row must exist by then
    await db.commit()

    job = SyncJob(
        sync_id=sync_id,
        user_id=payload.user_id,
        tenant_id=payload.tenant_id,
        entities=tuple(payload.entities),
        sync_from_date=payload.sync_from_date,
        limits=payload.limits,
        encrypted_access_token=encrypt_value(payload.access_token),
    )
    try:
        result = run_historical_sync.apply_async(
            args=[job.model_dump(mode="json")],
            task_id=str(sync_id),
            queue=settings.historical_sync_queue,
        )
    except Exception:
        logger.exception("Could not enqueue historical sync %s", sync_id)
        log.status = "failed"
        log.error_message = "Job queue unavailable"
        log.completed_at = datetime.now(timezone.utc)
        await db.commit()
        await release_enqueue_lock(r, str(sync_id))
        raise HTTPException(status_code=503, detail="Job queue unavailable")

    logger.info(
        "Queued historical sync %s for tenant %s (%s)",
        sync_id, payload.tenant_id, ", ".join(e.value for e in payload.entities),
    )
    return SyncEnqueueResponse(sync_id=sync_id, job_id=result.id, entities=list(payload.entities))


@router.get("/sync/progress/{sync_id}", response_model=SyncProgress)
async def get_sync_progress(sync_id: uuid.UUID, r=Depends(get_redis)):
    progress = await load_progress(r, sync_id)
    if progress is None:
        raise HTTPException(status_code=404, detail="No progress recorded for this sync")
    return progress


@router.get("/sync/checkpoint/{sync_id}", response_model=CheckpointStatusResponse)
async def get_sync_checkpoint(sync_id: uuid.UUID, r=Depends(get_redis)):
    checkpoint = await CheckpointStore(r).load(sync_id)
    return CheckpointStatusResponse(exists=checkpoint is not None, checkpoint=checkpoint)


# ─── Job queue ─────────────────────────────────────────────────────────────

@queue_router.get("/job/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str):
    result = AsyncResult(job_id, app=celery_app)
    response = JobStatusResponse(id=job_id, state=result.state)
    if result.successful():
        response.result = result.result
    elif result.failed():
        response.failed_reason = str(result.result)
    return response
