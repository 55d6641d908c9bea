"""
Sync job service: creation, progress and cancellation.

Usage:
    job, chunks = await sync_job_service.create_sync_job(actor, mailbox_id, "initial")
    progress = await sync_job_service.get_progress(actor, job.id)
    await sync_job_service.cancel_sync_job(actor, job.id, reason="user disconnected")

Design:
    - The mailbox's tenant is resolved before anything is written; an
      unknown mailbox raises ParentNotFound.
    - Parent and chunks are created in one transaction; the trigger is
      notified only after commit.
    - Every read and write is scoped by authorize().
"""

from typing import Any, Protocol

from mailsync.features.sync_engine.domain.config import get_scheduler_config
from mailsync.features.sync_engine.domain.errors import InvalidTransition, JobNotFound, ParentNotFound
from mailsync.features.sync_engine.domain.models import (
    SYNC_KINDS,
    Actor,
    ChunkJob,
    JobProgress,
    Resource,
    SyncJob,
)
from mailsync.features.sync_engine.policy.access import ensure_authorized
from mailsync.features.sync_engine.policy.aggregate import progress_percentage
from mailsync.features.sync_engine.policy.decomposition import (
    default_estimate,
    plan_chunks,
    resolve_priority,
)
from mailsync.features.sync_engine.repository.chunk_repository import ChunkRepository
from mailsync.features.sync_engine.repository.mailbox_directory import mailbox_directory
from mailsync.features.sync_engine.repository.sync_job_repository import SyncJobRepository
from mailsync.features.sync_engine.services.invocation_trigger import trigger_outbox
from mailsync.infrastructure.audit import audit_logger
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class MailboxDirectory(Protocol):
    async def resolve_tenant(self, mailbox_id: str) -> str | None: ...


class SyncJobService:
    def __init__(self, directory: MailboxDirectory | None = None):
        self.directory = directory or mailbox_directory

    async def create_sync_job(
        self,
        actor: Actor,
        mailbox_id: str,
        sync_kind: str,
        estimated_count: int | None = None,
        priority: int | None = None,
        request_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[SyncJob, list[ChunkJob]]:
        """
        Create a SyncJob and its full chunk set for one mailbox.

        Raises:
            ParentNotFound: mailbox is unknown
            AccessDenied: actor may not write to the mailbox's tenant
            ValueError: unknown sync kind
        """
        if sync_kind not in SYNC_KINDS:
            raise ValueError(f"Unknown sync kind: {sync_kind}")

        tenant_id = await self.directory.resolve_tenant(mailbox_id)
        if not tenant_id:
            raise ParentNotFound(mailbox_id)

        ensure_authorized(actor, Resource("mailbox", tenant_id, mailbox_id), "write")

        config = get_scheduler_config().for_tenant(tenant_id)
        estimate = default_estimate(sync_kind, estimated_count)
        chunk_size = config.effective_chunk_size
        plans = plan_chunks(estimate, chunk_size)

        job, chunks = await ChunkRepository.create_job_with_chunks(
            tenant_id=tenant_id,
            mailbox_id=mailbox_id,
            sync_kind=sync_kind,
            priority=resolve_priority(sync_kind, priority),
            estimated_count=estimate,
            chunk_size=chunk_size,
            plans=plans,
            chunk_max_attempts=config.chunk_max_attempts,
            job_max_attempts=config.job_max_attempts,
            metadata=metadata,
        )

        await audit_logger.log(
            actor=actor.actor_id,
            action="sync_job_created",
            tenant_id=tenant_id,
            job_id=job.id,
            request_id=request_id,
            metadata={
                "mailbox_id": mailbox_id,
                "sync_kind": sync_kind,
                "estimated_count": estimate,
                "chunk_size": chunk_size,
                "total_chunks": len(chunks),
            },
        )
        await trigger_outbox.enqueue(job.id, "job_created", len(chunks))
        return job, chunks

    async def get_job(self, actor: Actor, job_id: str) -> SyncJob:
        job = await SyncJobRepository.get_job(job_id)
        if not job:
            raise JobNotFound(job_id, operation="get_job")
        ensure_authorized(actor, Resource("sync_job", job.tenant_id, job.id), "read")
        return job

    async def get_progress(self, actor: Actor, job_id: str) -> JobProgress:
        """Chunk counts, percentage and per-chunk detail for one job."""
        job = await self.get_job(actor, job_id)
        counts, emails_processed, emails_failed = await ChunkRepository.count_chunks(job.id)
        chunks = await ChunkRepository.list_chunks(job.id)

        return JobProgress(
            job_id=job.id,
            status=job.status,
            total=counts.total,
            completed=counts.completed,
            processing=counts.processing,
            pending=counts.pending,
            failed=counts.failed,
            percentage=progress_percentage(counts),
            total_emails_processed=emails_processed,
            total_emails_failed=emails_failed,
            chunks=[
                {
                    "chunk_id": chunk.id,
                    "chunk_number": chunk.chunk_number,
                    "chunk_size": chunk.chunk_size,
                    "status": chunk.status,
                    "attempts": chunk.attempts,
                    "emails_processed": chunk.emails_processed,
                    "emails_failed": chunk.emails_failed,
                    "next_retry_at": chunk.next_retry_at.isoformat() if chunk.next_retry_at else None,
                    "error_category": chunk.error_category,
                }
                for chunk in chunks
            ],
        )

    async def cancel_sync_job(
        self,
        actor: Actor,
        job_id: str,
        reason: str | None = None,
        request_id: str | None = None,
    ) -> SyncJob:
        """
        Cancel an active job. Pending chunks stay as they are; claims skip them
        and in-flight outcomes no-op against the cancelled parent.

        Raises:
            JobNotFound, AccessDenied, InvalidTransition (job already terminal)
        """
        job = await SyncJobRepository.get_job(job_id)
        if not job:
            raise JobNotFound(job_id, operation="cancel_sync_job")
        ensure_authorized(actor, Resource("sync_job", job.tenant_id, job.id), "write")

        cancelled = await SyncJobRepository.cancel_job(job_id, reason)
        if not cancelled:
            current = await SyncJobRepository.get_job(job_id)
            raise InvalidTransition(
                f"Sync job {job_id} is already {current.status if current else 'gone'}",
                operation="cancel_sync_job",
                recoverable=False,
            )

        await audit_logger.log(
            actor=actor.actor_id,
            action="sync_job_cancelled",
            tenant_id=job.tenant_id,
            job_id=job_id,
            reason=reason,
            request_id=request_id,
            metadata={"previous_status": job.status},
        )
        logger.info("Sync job cancelled", job_id=job_id, actor=actor.actor_id, previous_status=job.status)
        return cancelled


sync_job_service = SyncJobService()
