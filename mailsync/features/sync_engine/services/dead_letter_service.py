"""
Dead-letter archive: the durable record of why automatic recovery gave up.
"""

from typing import Any

from mailsync.features.sync_engine.domain.errors import DeadLetterNotFound
from mailsync.features.sync_engine.domain.models import (
    Actor,
    ChunkJob,
    DeadLetterRecord,
    SyncJob,
    to_snapshot,
)
from mailsync.features.sync_engine.policy.access import ensure_operator
from mailsync.features.sync_engine.repository.dead_letter_repository import DeadLetterRepository
from mailsync.infrastructure.audit import audit_logger


class DeadLetterService:
    async def archive(
        self,
        unit: SyncJob | ChunkJob,
        reason: str,
        context: dict[str, Any] | None = None,
    ) -> DeadLetterRecord | None:
        """
        Archive a job or chunk. Archiving the same unit twice is a no-op that
        returns None.
        """
        unit_type = "chunk_job" if isinstance(unit, ChunkJob) else "sync_job"
        return await DeadLetterRepository.insert(
            tenant_id=unit.tenant_id,
            mailbox_id=unit.mailbox_id,
            unit_type=unit_type,
            unit_id=unit.id,
            failure_reason=reason,
            error_category=unit.error_category,
            retry_count=unit.attempts,
            last_error_message=unit.error_message,
            unit_snapshot=to_snapshot(unit),
            error_context=context,
        )

    async def list_dead_letters(
        self,
        actor: Actor,
        tenant_id: str | None = None,
        reviewed: bool | None = None,
        limit: int = 50,
    ) -> list[DeadLetterRecord]:
        ensure_operator(actor, "list_dead_letters")
        return await DeadLetterRepository.list_records(tenant_id=tenant_id, reviewed=reviewed, limit=limit)

    async def mark_reviewed(
        self,
        actor: Actor,
        record_id: str,
        notes: str | None = None,
        request_id: str | None = None,
    ) -> DeadLetterRecord:
        ensure_operator(actor, "review_dead_letter")

        record = await DeadLetterRepository.mark_reviewed(record_id, actor.actor_id, notes)
        if not record:
            raise DeadLetterNotFound(record_id, operation="mark_reviewed")

        await audit_logger.log_operator_action(
            actor=actor.actor_id,
            action="dead_letter_reviewed",
            tenant_id=record.tenant_id,
            job_id=record.unit_id if record.unit_type == "sync_job" else None,
            chunk_id=record.unit_id if record.unit_type == "chunk_job" else None,
            reason=notes,
            request_id=request_id,
            record_id=record_id,
        )
        return record


dead_letter_service = DeadLetterService()
