"""
Operator-only recovery actions for incident response.

Each action is appended to the audit trail with actor and reason, and the
trigger is notified after commit so reset work gets picked up.
"""

from typing import Any

from mailsync.features.sync_engine.domain.errors import ChunkNotFound
from mailsync.features.sync_engine.domain.models import Actor, ChunkOutcome, DeadLetterRecord
from mailsync.features.sync_engine.policy.access import ensure_operator
from mailsync.features.sync_engine.repository.chunk_repository import ChunkRepository
from mailsync.features.sync_engine.repository.sync_job_repository import SyncJobRepository
from mailsync.features.sync_engine.services.dead_letter_service import dead_letter_service
from mailsync.features.sync_engine.services.invocation_trigger import trigger_outbox
from mailsync.infrastructure.audit import audit_logger
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ManualRecoveryService:
    async def force_reset(
        self,
        actor: Actor,
        chunk_id: str,
        reason: str | None = None,
        reset_attempts: bool = False,
        request_id: str | None = None,
    ) -> dict[str, Any]:
        """Return one chunk to pending whatever its current state."""
        ensure_operator(actor, "force_reset")

        previous_status, outcome = await ChunkRepository.force_reset(
            chunk_id, reset_attempts=reset_attempts, reason=reason
        )

        await audit_logger.log_operator_action(
            actor=actor.actor_id,
            action="chunk_force_reset",
            tenant_id=outcome.chunk.tenant_id if outcome.chunk else None,
            job_id=outcome.job_id,
            chunk_id=chunk_id,
            reason=reason,
            request_id=request_id,
            previous_status=previous_status,
            reset_attempts=reset_attempts,
        )
        await self._notify(outcome, "force_reset")

        return {
            "chunk_id": chunk_id,
            "job_id": outcome.job_id,
            "previous_status": previous_status,
            "status": "pending",
            "job_status": outcome.job_status,
            "reset_attempts": reset_attempts,
        }

    async def reset_all_chunks(
        self,
        actor: Actor,
        job_id: str,
        reason: str | None = None,
        reset_attempts: bool = True,
        request_id: str | None = None,
    ) -> dict[str, Any]:
        """Return every processing or failed chunk of a job to pending."""
        ensure_operator(actor, "reset_all_chunks")

        reset_count, outcome = await ChunkRepository.reset_all(
            job_id, reset_attempts=reset_attempts, reason=reason
        )
        job = await SyncJobRepository.get_job(job_id)

        await audit_logger.log_operator_action(
            actor=actor.actor_id,
            action="sync_job_chunks_reset",
            tenant_id=job.tenant_id if job else None,
            job_id=job_id,
            reason=reason,
            request_id=request_id,
            reset_count=reset_count,
            reset_attempts=reset_attempts,
            previous_job_status=outcome.previous_job_status,
        )
        await self._notify(outcome, "reset_all_chunks")

        return {
            "job_id": job_id,
            "reset_count": reset_count,
            "job_status": outcome.job_status,
            "pending_chunks": outcome.pending_chunks,
            "reset_attempts": reset_attempts,
        }

    async def escalate_chunk(
        self,
        actor: Actor,
        chunk_id: str,
        reason: str,
        request_id: str | None = None,
    ) -> DeadLetterRecord | None:
        """Archive a chunk for review without changing its state."""
        ensure_operator(actor, "escalate_chunk")

        chunk = await ChunkRepository.get_chunk(chunk_id)
        if not chunk:
            raise ChunkNotFound(chunk_id, operation="escalate_chunk")

        record = await dead_letter_service.archive(chunk, f"escalated: {reason}", context={"actor": actor.actor_id})

        await audit_logger.log_operator_action(
            actor=actor.actor_id,
            action="chunk_escalated",
            tenant_id=chunk.tenant_id,
            job_id=chunk.sync_job_id,
            chunk_id=chunk_id,
            reason=reason,
            request_id=request_id,
            chunk_status=chunk.status,
            already_archived=record is None,
        )
        return record

    @staticmethod
    async def _notify(outcome: ChunkOutcome, reason: str) -> None:
        if outcome.job_id and outcome.pending_chunks > 0 and outcome.job_status not in ("completed", "cancelled"):
            await trigger_outbox.enqueue(outcome.job_id, reason, outcome.pending_chunks)


manual_recovery_service = ManualRecoveryService()
