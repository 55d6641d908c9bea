"""
One worker invocation: claim at most one chunk, run it, record one outcome.

The runner never loops. The trigger outbox chains the next invocation
whenever work remains, and the recovery sweep picks up anything a crashed
invocation leaves behind.

Usage:
    summary = await run_worker_invocation()
    # {"status": "completed", "chunk_id": ..., "job_id": ..., ...}
"""

import asyncio
import time
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from mailsync.features.sync_engine.domain.config import SchedulerConfig, get_scheduler_config
from mailsync.features.sync_engine.domain.models import ChunkJob, ExecutionResult, ExecutorError
from mailsync.features.sync_engine.policy.error_classifier import categorize_error
from mailsync.features.sync_engine.services.claim_manager import claim_manager
from mailsync.features.sync_engine.services.executor import HttpWorkExecutor, WorkExecutor
from mailsync.features.sync_engine.services.outcome_recorder import outcome_recorder
from mailsync.features.sync_engine.services.protection import ProtectionLayer, protection_layer
from mailsync.infrastructure.observability.logging import (
    bind_worker_context,
    clear_worker_context,
    get_logger,
)

logger = get_logger(__name__)


def new_worker_id() -> str:
    return f"worker-{uuid.uuid4().hex[:12]}"


async def run_worker_invocation(
    worker_id: str | None = None,
    executor: WorkExecutor | None = None,
    protection: ProtectionLayer | None = None,
) -> dict[str, Any]:
    """
    Returns a summary whose status is one of no_work, deferred, completed,
    failed, retry_scheduled or error.
    """
    worker_id = worker_id or new_worker_id()
    executor = executor or HttpWorkExecutor()
    protection = protection or protection_layer
    config = get_scheduler_config()

    bind_worker_context(worker_id)
    try:
        chunk = await claim_manager.claim(worker_id)
        if chunk is None:
            return {"status": "no_work", "worker_id": worker_id}

        bind_worker_context(worker_id, chunk_id=chunk.id, job_id=chunk.sync_job_id, tenant_id=chunk.tenant_id)
        summary: dict[str, Any] = {
            "worker_id": worker_id,
            "chunk_id": chunk.id,
            "job_id": chunk.sync_job_id,
            "chunk_number": chunk.chunk_number,
            "attempt": chunk.attempts,
        }
        tenant_config = config.for_tenant(chunk.tenant_id)

        try:
            decision = await protection.before_call(chunk.tenant_id, config=tenant_config)
            if not decision.allowed:
                # Not the chunk's fault: hand it back without using up an attempt
                await claim_manager.release(chunk.id, worker_id, retry_at=_after(decision.retry_after_seconds))
                logger.info(
                    "Chunk deferred by protection layer",
                    reason=decision.reason,
                    retry_after_seconds=decision.retry_after_seconds,
                )
                return {
                    **summary,
                    "status": "deferred",
                    "reason": decision.reason,
                    "retry_after_seconds": decision.retry_after_seconds,
                }

            started = time.monotonic()
            try:
                result = await asyncio.wait_for(
                    executor.execute(chunk.to_descriptor()),
                    timeout=config.execution_timeout_seconds,
                )
            except TimeoutError:
                result = ExecutorError(
                    message=f"Chunk execution timed out after {config.execution_timeout_seconds}s",
                    category="timeout",
                )

            if isinstance(result, ExecutionResult):
                if not result.duration_ms:
                    result.duration_ms = int((time.monotonic() - started) * 1000)
                await protection.after_call(chunk.tenant_id, success=True, config=tenant_config)
                outcome = await outcome_recorder.complete(chunk.id, result, worker_id)
                logger.info(
                    "Chunk completed",
                    emails_processed=result.emails_processed,
                    duration_ms=result.duration_ms,
                    job_status=outcome.job_status,
                )
                return {
                    **summary,
                    "status": "completed",
                    "applied": outcome.applied,
                    "emails_processed": result.emails_processed,
                    "job_status": outcome.job_status,
                }

            return await _record_failure(summary, chunk, result, worker_id, protection, tenant_config)

        except Exception as e:
            logger.error(
                "Worker invocation failed unexpectedly",
                error=str(e),
                error_type=type(e).__name__,
            )
            error = ExecutorError(message=f"{type(e).__name__}: {e}", category="processing_error")
            try:
                outcome = await outcome_recorder.fail(chunk.id, error, worker_id, run_sweep=False)
            except Exception as record_error:
                logger.error(
                    "Failed to record failure for chunk; recovery sweep will reclaim it",
                    error=str(record_error),
                    error_type=type(record_error).__name__,
                )
                return {**summary, "status": "error", "error": str(e)}
            return {
                **summary,
                "status": "error",
                "error": str(e),
                "chunk_status": outcome.chunk.status if outcome.chunk else None,
            }
    finally:
        clear_worker_context()


async def _record_failure(
    summary: dict[str, Any],
    chunk: ChunkJob,
    error: ExecutorError,
    worker_id: str,
    protection: ProtectionLayer,
    tenant_config: SchedulerConfig,
) -> dict[str, Any]:
    category = categorize_error(error)
    await protection.after_call(
        chunk.tenant_id,
        success=False,
        category=category,
        retry_after_seconds=error.retry_after_seconds,
        config=tenant_config,
    )
    outcome = await outcome_recorder.fail(chunk.id, error, worker_id)
    chunk_status = outcome.chunk.status if outcome.chunk else None

    logger.warning(
        "Chunk execution failed",
        error_category=category,
        error=(error.message or "")[:200],
        chunk_status=chunk_status,
        job_status=outcome.job_status,
    )
    return {
        **summary,
        "status": "retry_scheduled" if chunk_status == "pending" else "failed",
        "applied": outcome.applied,
        "error_category": category,
        "job_status": outcome.job_status,
    }


def _after(seconds: int) -> datetime:
    return datetime.now(UTC) + timedelta(seconds=max(1, seconds))
