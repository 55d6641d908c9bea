"""
Sync engine routes.

Three routers:
    router           /sync-jobs        tenant-facing job creation, progress, cancel
    internal_router  /internal/worker  invocation endpoint for the trigger
    operator_router  /operator         manual recovery and read-only stats

Errors map to HTTP as: not found -> 404, access denied -> 403, invalid
transition -> 409, database unavailable -> 503.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status

from mailsync.auth.verify import service_key_dependency
from mailsync.db.helpers import DatabaseError
from mailsync.features.sync_engine.api.dependencies import get_actor, get_request_id, require_operator
from mailsync.features.sync_engine.api.schemas import (
    CancelSyncJobRequest,
    CancelSyncJobResponse,
    CreateSyncJobRequest,
    CreateSyncJobResponse,
    EscalateChunkRequest,
    ForceResetRequest,
    JobProgressResponse,
    ResetChunksRequest,
    ReviewDeadLetterRequest,
    WorkerInvokeRequest,
    WorkerInvokeResponse,
)
from mailsync.features.sync_engine.domain.errors import (
    AccessDenied,
    ChunkNotFound,
    DeadLetterNotFound,
    InvalidTransition,
    JobNotFound,
    ParentNotFound,
    SyncEngineError,
)
from mailsync.features.sync_engine.domain.models import Actor
from mailsync.features.sync_engine.services.dead_letter_service import dead_letter_service
from mailsync.features.sync_engine.services.job_service import sync_job_service
from mailsync.features.sync_engine.services.manual_recovery import manual_recovery_service
from mailsync.features.sync_engine.services.protection import protection_layer
from mailsync.features.sync_engine.services.recovery_sweep import run_recovery_sweep
from mailsync.features.sync_engine.services.stats_service import (
    get_chunk_performance_stats,
    get_queue_stats,
)
from mailsync.features.sync_engine.services.worker_runner import new_worker_id, run_worker_invocation
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/sync-jobs", tags=["sync-jobs"])
internal_router = APIRouter(prefix="/internal/worker", tags=["internal"])
operator_router = APIRouter(prefix="/operator", tags=["operator"])

_NOT_FOUND = (ParentNotFound, JobNotFound, ChunkNotFound, DeadLetterNotFound)


def _to_http(e: Exception) -> HTTPException:
    if isinstance(e, _NOT_FOUND):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, AccessDenied):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    if isinstance(e, InvalidTransition):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, DatabaseError):
        logger.error("Database unavailable", error=str(e), operation=e.operation)
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database unavailable")
    logger.error("Sync engine error", error=str(e), error_type=type(e).__name__)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error")


_HANDLED = (SyncEngineError, DatabaseError, ValueError)


# =================================================================
# TENANT-FACING
# =================================================================


@router.post("", response_model=CreateSyncJobResponse, status_code=status.HTTP_201_CREATED)
async def create_sync_job(
    request: CreateSyncJobRequest,
    actor: Actor = Depends(get_actor),
    request_id: str | None = Depends(get_request_id),
):
    try:
        job, chunks = await sync_job_service.create_sync_job(
            actor,
            request.mailbox_id,
            request.sync_kind,
            estimated_count=request.estimated_count,
            priority=request.priority,
            request_id=request_id,
            metadata=request.metadata,
        )
    except _HANDLED as e:
        raise _to_http(e) from e

    return CreateSyncJobResponse(
        job_id=job.id,
        tenant_id=job.tenant_id,
        status=job.status,
        total_chunks=len(chunks),
        chunk_size=job.chunk_size,
        estimated_count=job.estimated_count,
    )


@router.get("/{job_id}/progress", response_model=JobProgressResponse)
async def get_sync_job_progress(job_id: str, actor: Actor = Depends(get_actor)):
    try:
        progress = await sync_job_service.get_progress(actor, job_id)
    except _HANDLED as e:
        raise _to_http(e) from e
    return progress.to_dict()


@router.post("/{job_id}/cancel", response_model=CancelSyncJobResponse)
async def cancel_sync_job(
    job_id: str,
    request: CancelSyncJobRequest | None = None,
    actor: Actor = Depends(get_actor),
    request_id: str | None = Depends(get_request_id),
):
    try:
        job = await sync_job_service.cancel_sync_job(
            actor, job_id, reason=request.reason if request else None, request_id=request_id
        )
    except _HANDLED as e:
        raise _to_http(e) from e

    return CancelSyncJobResponse(
        job_id=job.id,
        status=job.status,
        cancelled_at=job.completed_at.isoformat() if job.completed_at else None,
    )


# =================================================================
# WORKER INVOCATION
# =================================================================


@internal_router.post("/invoke", response_model=WorkerInvokeResponse, status_code=status.HTTP_202_ACCEPTED)
async def invoke_worker(
    payload: WorkerInvokeRequest,
    background_tasks: BackgroundTasks,
    _service: str = Depends(service_key_dependency),
):
    """Run one worker invocation after the response is sent."""
    worker_id = new_worker_id()
    logger.info(
        "Worker invocation requested",
        worker_id=worker_id,
        job_id=payload.parent_sync_job_id,
        reason=payload.reason,
        chunks_remaining=payload.chunks_remaining,
    )
    background_tasks.add_task(run_worker_invocation, worker_id)
    return WorkerInvokeResponse(accepted=True, worker_id=worker_id)


# =================================================================
# OPERATOR
# =================================================================


@operator_router.post("/chunks/{chunk_id}/force-reset")
async def force_reset_chunk(
    chunk_id: str,
    request: ForceResetRequest,
    actor: Actor = Depends(require_operator),
    request_id: str | None = Depends(get_request_id),
):
    try:
        return await manual_recovery_service.force_reset(
            actor,
            chunk_id,
            reason=request.reason,
            reset_attempts=request.reset_attempts,
            request_id=request_id,
        )
    except _HANDLED as e:
        raise _to_http(e) from e


@operator_router.post("/chunks/{chunk_id}/escalate")
async def escalate_chunk(
    chunk_id: str,
    request: EscalateChunkRequest,
    actor: Actor = Depends(require_operator),
    request_id: str | None = Depends(get_request_id),
):
    try:
        record = await manual_recovery_service.escalate_chunk(
            actor, chunk_id, reason=request.reason, request_id=request_id
        )
    except _HANDLED as e:
        raise _to_http(e) from e
    return {"chunk_id": chunk_id, "archived": record is not None, "record": record.to_dict() if record else None}


@operator_router.post("/sync-jobs/{job_id}/reset-chunks")
async def reset_sync_job_chunks(
    job_id: str,
    request: ResetChunksRequest,
    actor: Actor = Depends(require_operator),
    request_id: str | None = Depends(get_request_id),
):
    try:
        return await manual_recovery_service.reset_all_chunks(
            actor,
            job_id,
            reason=request.reason,
            reset_attempts=request.reset_attempts,
            request_id=request_id,
        )
    except _HANDLED as e:
        raise _to_http(e) from e


@operator_router.get("/stats/queue")
async def queue_stats(_actor: Actor = Depends(require_operator)):
    try:
        return await get_queue_stats()
    except _HANDLED as e:
        raise _to_http(e) from e


@operator_router.get("/stats/performance")
async def performance_stats(
    days: int = Query(default=7, ge=1, le=90),
    _actor: Actor = Depends(require_operator),
):
    try:
        return await get_chunk_performance_stats(days)
    except _HANDLED as e:
        raise _to_http(e) from e


@operator_router.get("/protection/{tenant_id}")
async def tenant_protection_state(tenant_id: str, _actor: Actor = Depends(require_operator)):
    try:
        states = await protection_layer.get_protection_state(tenant_id)
    except _HANDLED as e:
        raise _to_http(e) from e
    return {"tenant_id": tenant_id, "operations": states}


@operator_router.get("/circuits/open")
async def open_circuits(_actor: Actor = Depends(require_operator)):
    try:
        circuits = await protection_layer.list_open_circuits()
    except _HANDLED as e:
        raise _to_http(e) from e
    return {"count": len(circuits), "circuits": circuits}


@operator_router.get("/dead-letters")
async def list_dead_letters(
    tenant_id: str | None = None,
    reviewed: bool | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    actor: Actor = Depends(require_operator),
):
    try:
        records = await dead_letter_service.list_dead_letters(
            actor, tenant_id=tenant_id, reviewed=reviewed, limit=limit
        )
    except _HANDLED as e:
        raise _to_http(e) from e
    return {"count": len(records), "records": [record.to_dict() for record in records]}


@operator_router.post("/dead-letters/{record_id}/review")
async def review_dead_letter(
    record_id: str,
    request: ReviewDeadLetterRequest,
    actor: Actor = Depends(require_operator),
    request_id: str | None = Depends(get_request_id),
):
    try:
        record = await dead_letter_service.mark_reviewed(
            actor, record_id, notes=request.notes, request_id=request_id
        )
    except _HANDLED as e:
        raise _to_http(e) from e
    return record.to_dict()


@operator_router.post("/sweep")
async def trigger_recovery_sweep(_actor: Actor = Depends(require_operator)):
    try:
        return await run_recovery_sweep()
    except _HANDLED as e:
        raise _to_http(e) from e
