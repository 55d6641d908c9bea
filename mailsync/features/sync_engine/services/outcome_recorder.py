"""
Outcome recorder: complete/fail transitions for claimed chunks.

After the repository transaction commits, the recorder writes the audit
trail, asks the trigger to continue the job if work remains, and runs the
recovery sweep opportunistically.
"""

from datetime import UTC, datetime, timedelta

from mailsync.features.sync_engine.domain.config import get_scheduler_config
from mailsync.features.sync_engine.domain.errors import ChunkNotFound
from mailsync.features.sync_engine.domain.models import (
    TERMINAL_JOB_STATUSES,
    ChunkOutcome,
    ExecutionResult,
    ExecutorError,
)
from mailsync.features.sync_engine.policy.error_classifier import categorize_error
from mailsync.features.sync_engine.policy.retry import decide_retry
from mailsync.features.sync_engine.repository.chunk_repository import ChunkRepository
from mailsync.features.sync_engine.services.invocation_trigger import trigger_outbox
from mailsync.features.sync_engine.services.recovery_sweep import recovery_sweep
from mailsync.infrastructure.audit import audit_logger
from mailsync.infrastructure.audit.audit_logger import SCHEDULER_ACTOR
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class OutcomeRecorder:
    async def complete(
        self,
        chunk_id: str,
        result: ExecutionResult,
        worker_id: str | None = None,
        run_sweep: bool = True,
    ) -> ChunkOutcome:
        """
        Mark a chunk completed. Idempotent: a repeat call changes nothing
        and fires no trigger.
        """
        outcome = await ChunkRepository.record_completion(chunk_id, result, worker_id)
        await self._after_transition(outcome, worker_id, reason="chunk_completed", run_sweep=run_sweep)
        return outcome

    async def fail(
        self,
        chunk_id: str,
        error: ExecutorError,
        worker_id: str | None = None,
        run_sweep: bool = True,
    ) -> ChunkOutcome:
        """
        Categorize the failure, consult the retry policy and apply the result.
        """
        chunk = await ChunkRepository.get_chunk(chunk_id)
        if not chunk:
            raise ChunkNotFound(chunk_id, operation="fail")

        category = categorize_error(error)
        config = get_scheduler_config().for_tenant(chunk.tenant_id)
        recent_failures = await ChunkRepository.count_recent_failures(
            category, config.recent_failure_window_minutes, tenant_id=chunk.tenant_id
        )
        decision = decide_retry(
            category,
            attempts=chunk.attempts,
            max_attempts=chunk.max_attempts,
            config=config,
            recent_failures=recent_failures,
        )

        retry_at = None
        if decision.retry:
            now = datetime.now(UTC)
            retry_at = now + timedelta(seconds=decision.delay_seconds)
            if category == "rate_limit" and error.retry_after_seconds:
                retry_at = max(retry_at, now + timedelta(seconds=error.retry_after_seconds))

        outcome = await ChunkRepository.record_failure(
            chunk_id,
            worker_id=worker_id,
            category=category,
            message=error.message,
            retry_at=retry_at,
            checkpoint=error.checkpoint,
            failure_reason=f"{category}: {decision.reason}",
            error_context={
                "code": error.code,
                "reported_category": error.category,
                "decision": decision.reason,
                "recent_failures": recent_failures,
            },
        )

        if outcome.applied:
            await audit_logger.log(
                actor=worker_id or SCHEDULER_ACTOR,
                action="chunk_retry_scheduled" if decision.retry else "chunk_failed",
                tenant_id=chunk.tenant_id,
                job_id=chunk.sync_job_id,
                chunk_id=chunk_id,
                reason=decision.reason,
                metadata={
                    "error_category": category,
                    "attempts": chunk.attempts,
                    "max_attempts": chunk.max_attempts,
                    "next_retry_at": retry_at.isoformat() if retry_at else None,
                    "error_message": (error.message or "")[:200],
                },
            )

        await self._after_transition(outcome, worker_id, reason="chunk_failed", run_sweep=run_sweep)
        return outcome

    async def _after_transition(
        self, outcome: ChunkOutcome, worker_id: str | None, reason: str, run_sweep: bool
    ) -> None:
        if outcome.applied:
            if outcome.job_transitioned and outcome.job_status in TERMINAL_JOB_STATUSES:
                await audit_logger.log(
                    actor=worker_id or SCHEDULER_ACTOR,
                    action=f"sync_job_{outcome.job_status}",
                    tenant_id=outcome.chunk.tenant_id if outcome.chunk else None,
                    job_id=outcome.job_id,
                    metadata={
                        "completed_chunks": outcome.completed_chunks,
                        "failed_chunks": outcome.failed_chunks,
                        "total_chunks": outcome.total_chunks,
                        "dead_lettered": outcome.dead_lettered,
                    },
                )

            if outcome.job_status not in TERMINAL_JOB_STATUSES and outcome.pending_chunks > 0:
                await trigger_outbox.enqueue(outcome.job_id, reason, outcome.pending_chunks)

        if run_sweep:
            await self._opportunistic_sweep()

    async def _opportunistic_sweep(self) -> None:
        try:
            await recovery_sweep.run(notify=False)
        except Exception as e:
            logger.error(
                "Opportunistic recovery sweep failed",
                error=str(e),
                error_type=type(e).__name__,
            )


outcome_recorder = OutcomeRecorder()
