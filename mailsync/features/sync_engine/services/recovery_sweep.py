"""
Recovery sweep: reclaim work that a vanished worker left behind.

Runs periodically (jobs/recovery_sweep_job.py) and opportunistically after
every chunk outcome. Steps:
    1. processing chunks older than the stuck timeout go back to pending,
       attempts unchanged, worker_id and started_at cleared
    2. stuck chunks with no attempts left are failed with category timeout
    3. parents marked processing with nothing processing are recomputed
    4. active jobs with ready chunks and no worker are re-notified

Every step is safe to run alongside claims: resets use FOR UPDATE SKIP
LOCKED and outcome writes are conditional on the row's current status.
"""

from typing import Any

from mailsync.features.sync_engine.domain.config import get_scheduler_config
from mailsync.features.sync_engine.repository.chunk_repository import ChunkRepository
from mailsync.features.sync_engine.repository.sync_job_repository import SyncJobRepository
from mailsync.features.sync_engine.services.invocation_trigger import trigger_outbox
from mailsync.infrastructure.audit import audit_logger
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RecoverySweep:
    async def run(self, notify: bool = True) -> dict[str, Any]:
        """
        Run one sweep pass.

        Args:
            notify: Re-notify the trigger for jobs with ready work

        Returns:
            Summary counts for each action taken
        """
        config = get_scheduler_config()
        timeout_minutes = config.stuck_timeout_minutes
        summary = {
            "chunks_reset": 0,
            "chunks_failed": 0,
            "jobs_recomputed": 0,
            "jobs_failed": 0,
            "jobs_notified": 0,
        }

        reset_rows = await ChunkRepository.reset_stuck(timeout_minutes)
        for row in reset_rows:
            await audit_logger.log_recovery_action(
                "chunk_reset_stuck",
                tenant_id=row["tenant_id"],
                job_id=row["job_id"],
                chunk_id=row["chunk_id"],
                reason=f"processing for more than {timeout_minutes} minutes",
                previous_worker_id=row["previous_worker_id"],
                stuck_seconds=row["stuck_seconds"],
                attempts=row["attempts"],
            )
        summary["chunks_reset"] = len(reset_rows)

        for chunk in await ChunkRepository.find_exhausted_stuck(timeout_minutes):
            outcome = await ChunkRepository.record_failure(
                chunk.id,
                worker_id=None,
                category="timeout",
                message=(
                    f"Chunk stuck in processing for more than {timeout_minutes} minutes "
                    f"after {chunk.attempts} attempts"
                ),
                retry_at=None,
                failure_reason="stuck with no attempts left",
                error_context={
                    "previous_worker_id": chunk.worker_id,
                    "started_at": chunk.started_at.isoformat() if chunk.started_at else None,
                },
            )
            if not outcome.applied:
                continue

            summary["chunks_failed"] += 1
            if outcome.job_failed_now:
                summary["jobs_failed"] += 1
            await audit_logger.log_recovery_action(
                "chunk_failed_stuck",
                tenant_id=chunk.tenant_id,
                job_id=chunk.sync_job_id,
                chunk_id=chunk.id,
                reason="stuck with no attempts left",
                previous_worker_id=chunk.worker_id,
                attempts=chunk.attempts,
                job_status=outcome.job_status,
            )

        for job in await SyncJobRepository.find_stalled_jobs():
            outcome = await ChunkRepository.recompute_job(job.id)
            if not outcome.job_transitioned:
                continue

            summary["jobs_recomputed"] += 1
            if outcome.job_failed_now:
                summary["jobs_failed"] += 1
            await audit_logger.log_recovery_action(
                "sync_job_recomputed",
                tenant_id=job.tenant_id,
                job_id=job.id,
                reason="processing with no active chunks",
                previous_status=outcome.previous_job_status,
                status=outcome.job_status,
            )

        if notify:
            for ready in await ChunkRepository.jobs_with_ready_work():
                if await trigger_outbox.enqueue(ready["job_id"], "recovery_sweep", ready["ready_chunks"]):
                    summary["jobs_notified"] += 1

        if any(summary.values()):
            logger.info("Recovery sweep finished", **summary)
        else:
            logger.debug("Recovery sweep found nothing to do")
        return summary


recovery_sweep = RecoverySweep()


async def run_recovery_sweep(notify: bool = True) -> dict[str, Any]:
    return await recovery_sweep.run(notify=notify)
