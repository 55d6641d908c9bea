"""
Persistence for parent sync jobs.

Status writes are conditional (`WHERE status <> new AND status <> 'cancelled'`)
so duplicate recomputes and late outcomes cannot flip a job twice or revive
a cancelled one. Most methods accept an open connection so the chunk
repository can run them inside its own transaction.
"""

import psycopg
from psycopg.types.json import Jsonb

from mailsync.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from mailsync.features.sync_engine.domain.models import ChunkCounts, SyncJob
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class SyncJobRepositoryError(DatabaseError):
    """More specific exception for sync job persistence failures."""


class SyncJobRepository:
    """Persistence helpers for the sync_jobs table."""

    JOB_SELECT_COLUMNS = """
        id, tenant_id, mailbox_id, sync_kind, priority, status,
        attempts, max_attempts, estimated_count, chunk_size, total_chunks,
        created_at, started_at, completed_at, next_retry_at,
        emails_processed, emails_failed, error_category, error_message, metadata
    """

    @classmethod
    def _row_to_job(cls, row: dict | None) -> SyncJob | None:
        if not row:
            return None

        return SyncJob(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            mailbox_id=str(row["mailbox_id"]),
            sync_kind=row["sync_kind"],
            priority=row["priority"],
            status=row["status"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            estimated_count=row["estimated_count"],
            chunk_size=row["chunk_size"],
            total_chunks=row["total_chunks"],
            created_at=row["created_at"],
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            next_retry_at=row.get("next_retry_at"),
            emails_processed=row.get("emails_processed") or 0,
            emails_failed=row.get("emails_failed") or 0,
            error_category=row.get("error_category"),
            error_message=row.get("error_message"),
            metadata=row.get("metadata") or {},
        )

    @classmethod
    async def insert_job(
        cls,
        *,
        tenant_id: str,
        mailbox_id: str,
        sync_kind: str,
        priority: int,
        estimated_count: int,
        chunk_size: int,
        total_chunks: int,
        max_attempts: int,
        metadata: dict | None = None,
        connection: psycopg.AsyncConnection | None = None,
    ) -> SyncJob:
        query = f"""
            INSERT INTO sync_jobs (
                tenant_id, mailbox_id, sync_kind, priority, status,
                max_attempts, estimated_count, chunk_size, total_chunks, metadata
            )
            VALUES (%s, %s, %s, %s, 'pending', %s, %s, %s, %s, %s)
            RETURNING {cls.JOB_SELECT_COLUMNS}
        """

        row = await fetch_one(
            query,
            (
                tenant_id,
                mailbox_id,
                sync_kind,
                priority,
                max_attempts,
                estimated_count,
                chunk_size,
                total_chunks,
                Jsonb(metadata or {}),
            ),
            connection=connection,
        )
        if not row:
            raise SyncJobRepositoryError("Failed to create sync job", operation="insert_job")
        return cls._row_to_job(row)

    @classmethod
    async def get_job(
        cls, job_id: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> SyncJob | None:
        query = f"SELECT {cls.JOB_SELECT_COLUMNS} FROM sync_jobs WHERE id = %s"
        row = await fetch_one(query, (job_id,), connection=connection)
        return cls._row_to_job(row)

    @classmethod
    async def lock_job(cls, job_id: str, connection: psycopg.AsyncConnection) -> SyncJob | None:
        """SELECT ... FOR UPDATE; serializes recomputes of one parent."""
        query = f"SELECT {cls.JOB_SELECT_COLUMNS} FROM sync_jobs WHERE id = %s FOR UPDATE"
        row = await fetch_one(query, (job_id,), connection=connection)
        return cls._row_to_job(row)

    @classmethod
    async def apply_aggregate(
        cls,
        job_id: str,
        status: str,
        counts: ChunkCounts,
        emails_processed: int,
        emails_failed: int,
        *,
        error_category: str | None = None,
        error_message: str | None = None,
        connection: psycopg.AsyncConnection | None = None,
    ) -> bool:
        """
        Rewrite the stored status from the chunk projection.

        Returns True only when the status actually changed.
        """
        truncated_error = error_message[:500] if error_message else None
        query = """
            UPDATE sync_jobs
            SET status = %s,
                updated_at = NOW(),
                started_at = CASE WHEN %s = 'pending' THEN started_at ELSE COALESCE(started_at, NOW()) END,
                completed_at = CASE WHEN %s IN ('completed', 'failed') THEN NOW() ELSE NULL END,
                emails_processed = %s,
                emails_failed = %s,
                error_category = CASE WHEN %s = 'failed' THEN %s ELSE NULL END,
                error_message = CASE WHEN %s = 'failed' THEN %s ELSE NULL END,
                metadata = metadata || %s
            WHERE id = %s
              AND status <> %s
              AND status <> 'cancelled'
        """

        chunk_summary = Jsonb(
            {
                "chunks": {
                    "total": counts.total,
                    "pending": counts.pending,
                    "processing": counts.processing,
                    "completed": counts.completed,
                    "failed": counts.failed,
                }
            }
        )
        updated = await execute_query(
            query,
            (
                status,
                status,
                status,
                emails_processed,
                emails_failed,
                status,
                error_category,
                status,
                truncated_error,
                chunk_summary,
                job_id,
                status,
            ),
            connection=connection,
        )
        if updated:
            logger.info("Sync job status changed", job_id=job_id, status=status)
        return updated > 0

    @classmethod
    async def update_totals(
        cls,
        job_id: str,
        emails_processed: int,
        emails_failed: int,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> None:
        query = """
            UPDATE sync_jobs
            SET emails_processed = %s,
                emails_failed = %s,
                updated_at = NOW()
            WHERE id = %s
        """
        await execute_query(query, (emails_processed, emails_failed, job_id), connection=connection)

    @classmethod
    async def cancel_job(cls, job_id: str, reason: str | None = None) -> SyncJob | None:
        """
        Mark the job cancelled unless it already reached a terminal state.

        Returns the updated job, or None when nothing changed.
        """
        query = f"""
            UPDATE sync_jobs
            SET status = 'cancelled',
                completed_at = NOW(),
                updated_at = NOW(),
                metadata = metadata || %s
            WHERE id = %s
              AND status NOT IN ('completed', 'failed', 'cancelled')
            RETURNING {cls.JOB_SELECT_COLUMNS}
        """
        row = await fetch_one(query, (Jsonb({"cancel_reason": reason}), job_id))
        if row:
            logger.info("Sync job cancelled", job_id=job_id, reason=reason)
        return cls._row_to_job(row)

    @classmethod
    async def find_stalled_jobs(cls, limit: int = 100) -> list[SyncJob]:
        """Jobs marked processing with no chunk currently processing."""
        query = f"""
            SELECT {cls.JOB_SELECT_COLUMNS}
            FROM sync_jobs j
            WHERE j.status = 'processing'
              AND NOT EXISTS (
                  SELECT 1 FROM chunk_jobs c
                  WHERE c.sync_job_id = j.id AND c.status = 'processing'
              )
            ORDER BY j.updated_at ASC
            LIMIT %s
        """
        rows = await fetch_all(query, (limit,))
        return [cls._row_to_job(row) for row in rows]

    @classmethod
    async def delete_expired(cls, completed_days: int, failed_days: int) -> dict[str, int]:
        """Retention: drop finished jobs past their window. Chunks cascade."""
        completed_query = """
            DELETE FROM sync_jobs
            WHERE (status = 'completed' AND completed_at < NOW() - (%s::int * INTERVAL '1 day'))
               OR (status = 'cancelled'
                   AND COALESCE(completed_at, created_at) < NOW() - (%s::int * INTERVAL '1 day'))
        """
        failed_query = """
            DELETE FROM sync_jobs
            WHERE status = 'failed'
              AND COALESCE(completed_at, created_at) < NOW() - (%s::int * INTERVAL '1 day')
        """

        completed_deleted = await execute_query(completed_query, (completed_days, completed_days))
        failed_deleted = await execute_query(failed_query, (failed_days,))

        return {"completed_jobs_deleted": completed_deleted, "failed_jobs_deleted": failed_deleted}
