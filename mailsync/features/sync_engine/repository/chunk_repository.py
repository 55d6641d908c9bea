"""
Persistence for chunk jobs and every transition that touches them.

Design:
    - Claiming is one short transaction: pick a candidate with FOR UPDATE
      SKIP LOCKED, re-check the tenant limit under a per-tenant advisory
      lock, then flip the chunk (and a pending parent) to processing.
    - Outcomes (complete, fail, operator resets) run in one transaction that
      locks the parent row first, applies a conditional chunk update, then
      recomputes the parent status from its chunks.
    - Terminal failures write their dead-letter rows in that same transaction.
"""

from datetime import datetime
from typing import Any

import psycopg
from psycopg.types.json import Jsonb

from mailsync.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, fetch_val
from mailsync.db.pool import get_db_transaction
from mailsync.features.sync_engine.domain.errors import ChunkNotFound, InvalidTransition, JobNotFound
from mailsync.features.sync_engine.domain.models import (
    TERMINAL_CHUNK_STATUSES,
    ChunkCounts,
    ChunkJob,
    ChunkOutcome,
    ChunkPlan,
    ExecutionResult,
    SyncJob,
    to_snapshot,
)
from mailsync.features.sync_engine.policy.aggregate import derive_job_status
from mailsync.features.sync_engine.repository.dead_letter_repository import DeadLetterRepository
from mailsync.features.sync_engine.repository.sync_job_repository import SyncJobRepository
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ChunkRepositoryError(DatabaseError):
    """More specific exception for chunk persistence failures."""


class ChunkRepository:
    """Persistence helpers for the chunk_jobs table."""

    CHUNK_SELECT_COLUMNS = """
        id, sync_job_id, tenant_id, mailbox_id, chunk_number, total_chunks,
        chunk_size, priority, status, attempts, max_attempts, created_at,
        started_at, completed_at, next_retry_at, worker_id, checkpoint_data,
        emails_processed, emails_failed, duration_ms, error_category,
        error_message, metadata
    """

    MAX_CLAIM_ROUNDS = 3

    # busy_tenants pre-filters on committed counts; the limit itself is
    # re-checked under the tenant's advisory lock in claim_next().
    CLAIM_CANDIDATE_QUERY = """
        WITH busy_tenants AS (
            SELECT c.tenant_id
            FROM chunk_jobs c
            WHERE c.status = 'processing'
            GROUP BY c.tenant_id
            HAVING COUNT(*) >= COALESCE((%s::jsonb ->> c.tenant_id::text)::int, %s)
        )
        SELECT c.id, c.tenant_id::text AS tenant_id
        FROM chunk_jobs c
        JOIN sync_jobs j ON j.id = c.sync_job_id
        WHERE c.status = 'pending'
          AND c.attempts < c.max_attempts
          AND (c.next_retry_at IS NULL OR c.next_retry_at <= NOW())
          AND j.status NOT IN ('completed', 'failed', 'cancelled')
          AND c.tenant_id NOT IN (SELECT tenant_id FROM busy_tenants)
          AND NOT (c.tenant_id::text = ANY(%s::text[]))
        ORDER BY c.chunk_number ASC, j.priority DESC, c.created_at ASC
        LIMIT 1
        FOR UPDATE OF c SKIP LOCKED
    """

    CLAIM_UPDATE_QUERY = f"""
        WITH claimed AS (
            UPDATE chunk_jobs c
            SET status = 'processing',
                started_at = NOW(),
                updated_at = NOW(),
                attempts = c.attempts + 1,
                worker_id = %s,
                next_retry_at = NULL
            WHERE c.id = %s
              AND c.status = 'pending'
            RETURNING c.*
        ),
        parent AS (
            UPDATE sync_jobs j
            SET status = 'processing',
                started_at = COALESCE(j.started_at, NOW()),
                updated_at = NOW()
            FROM claimed
            WHERE j.id = claimed.sync_job_id
              AND j.status IN ('pending', 'chunked')
            RETURNING j.id
        )
        SELECT {CHUNK_SELECT_COLUMNS} FROM claimed
    """

    @classmethod
    def _row_to_chunk(cls, row: dict | None) -> ChunkJob | None:
        if not row:
            return None

        return ChunkJob(
            id=str(row["id"]),
            sync_job_id=str(row["sync_job_id"]),
            tenant_id=str(row["tenant_id"]),
            mailbox_id=str(row["mailbox_id"]),
            chunk_number=row["chunk_number"],
            total_chunks=row["total_chunks"],
            chunk_size=row["chunk_size"],
            priority=row["priority"],
            status=row["status"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            created_at=row["created_at"],
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            next_retry_at=row.get("next_retry_at"),
            worker_id=row.get("worker_id"),
            checkpoint_data=row.get("checkpoint_data") or {},
            emails_processed=row.get("emails_processed") or 0,
            emails_failed=row.get("emails_failed") or 0,
            duration_ms=row.get("duration_ms"),
            error_category=row.get("error_category"),
            error_message=row.get("error_message"),
            metadata=row.get("metadata") or {},
        )

    # =================================================================
    # CREATION
    # =================================================================

    @classmethod
    async def create_job_with_chunks(
        cls,
        *,
        tenant_id: str,
        mailbox_id: str,
        sync_kind: str,
        priority: int,
        estimated_count: int,
        chunk_size: int,
        plans: list[ChunkPlan],
        chunk_max_attempts: int,
        job_max_attempts: int,
        metadata: dict | None = None,
    ) -> tuple[SyncJob, list[ChunkJob]]:
        """
        Insert the parent and all of its chunks atomically.

        Any failure rolls back the parent too, so a job without its full
        chunk set is never visible.
        """
        insert_chunk = """
            INSERT INTO chunk_jobs (
                sync_job_id, tenant_id, mailbox_id, chunk_number, total_chunks,
                chunk_size, priority, status, max_attempts, metadata
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, 'pending', %s, %s)
        """

        try:
            async with await get_db_transaction() as conn:
                job = await SyncJobRepository.insert_job(
                    tenant_id=tenant_id,
                    mailbox_id=mailbox_id,
                    sync_kind=sync_kind,
                    priority=priority,
                    estimated_count=estimated_count,
                    chunk_size=chunk_size,
                    total_chunks=len(plans),
                    max_attempts=job_max_attempts,
                    metadata=metadata,
                    connection=conn,
                )

                async with conn.cursor() as cur:
                    await cur.executemany(
                        insert_chunk,
                        [
                            (
                                job.id,
                                tenant_id,
                                mailbox_id,
                                plan.chunk_number,
                                plan.total_chunks,
                                plan.chunk_size,
                                plan.priority,
                                chunk_max_attempts,
                                Jsonb({"offset": plan.offset}),
                            )
                            for plan in plans
                        ],
                    )

                chunks = await cls.list_chunks(job.id, connection=conn)

        except psycopg.Error as e:
            logger.error("Sync job creation failed", mailbox_id=mailbox_id, error=str(e))
            raise ChunkRepositoryError(
                f"Failed to create sync job with chunks: {e}", operation="create_job_with_chunks"
            ) from e

        logger.info(
            "Sync job created",
            job_id=job.id,
            tenant_id=tenant_id,
            mailbox_id=mailbox_id,
            total_chunks=len(chunks),
            chunk_size=chunk_size,
        )
        return job, chunks

    # =================================================================
    # READS
    # =================================================================

    @classmethod
    async def get_chunk(
        cls, chunk_id: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> ChunkJob | None:
        query = f"SELECT {cls.CHUNK_SELECT_COLUMNS} FROM chunk_jobs WHERE id = %s"
        return cls._row_to_chunk(await fetch_one(query, (chunk_id,), connection=connection))

    @classmethod
    async def list_chunks(
        cls, job_id: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> list[ChunkJob]:
        query = f"""
            SELECT {cls.CHUNK_SELECT_COLUMNS}
            FROM chunk_jobs
            WHERE sync_job_id = %s
            ORDER BY chunk_number ASC
        """
        rows = await fetch_all(query, (job_id,), connection=connection)
        return [cls._row_to_chunk(row) for row in rows]

    @classmethod
    async def count_chunks(
        cls, job_id: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> tuple[ChunkCounts, int, int]:
        """Return (counts by status, emails_processed total, emails_failed total)."""
        query = """
            SELECT
                COUNT(*) AS total,
                COUNT(*) FILTER (WHERE status IN ('pending', 'retrying')) AS pending,
                COUNT(*) FILTER (WHERE status = 'processing') AS processing,
                COUNT(*) FILTER (WHERE status = 'completed') AS completed,
                COUNT(*) FILTER (WHERE status = 'failed') AS failed,
                COALESCE(SUM(emails_processed), 0) AS emails_processed,
                COALESCE(SUM(emails_failed), 0) AS emails_failed
            FROM chunk_jobs
            WHERE sync_job_id = %s
        """
        row = await fetch_one(query, (job_id,), connection=connection) or {}
        counts = ChunkCounts(
            total=row.get("total") or 0,
            pending=row.get("pending") or 0,
            processing=row.get("processing") or 0,
            completed=row.get("completed") or 0,
            failed=row.get("failed") or 0,
        )
        return counts, int(row.get("emails_processed") or 0), int(row.get("emails_failed") or 0)

    @classmethod
    async def count_recent_failures(cls, category: str, window_minutes: int, tenant_id: str | None = None) -> int:
        """Failures in category within the window, for one tenant when tenant_id is given."""
        query = """
            SELECT COUNT(*)
            FROM chunk_jobs
            WHERE error_category = %s
              AND last_error_at > NOW() - (%s::int * INTERVAL '1 minute')
              AND (%s::text IS NULL OR tenant_id::text = %s)
        """
        return int(await fetch_val(query, (category, window_minutes, tenant_id, tenant_id)) or 0)

    @classmethod
    async def jobs_with_ready_work(cls, limit: int = 100) -> list[dict[str, Any]]:
        """Active jobs with claimable chunks and nothing currently processing."""
        query = """
            SELECT j.id AS job_id, j.tenant_id, COUNT(c.id) AS ready_chunks
            FROM sync_jobs j
            JOIN chunk_jobs c ON c.sync_job_id = j.id
            WHERE j.status NOT IN ('completed', 'failed', 'cancelled')
              AND c.status = 'pending'
              AND c.attempts < c.max_attempts
              AND (c.next_retry_at IS NULL OR c.next_retry_at <= NOW())
              AND NOT EXISTS (
                  SELECT 1 FROM chunk_jobs p
                  WHERE p.sync_job_id = j.id AND p.status = 'processing'
              )
            GROUP BY j.id, j.tenant_id, j.priority
            ORDER BY j.priority DESC
            LIMIT %s
        """
        rows = await fetch_all(query, (limit,))
        return [
            {"job_id": str(row["job_id"]), "tenant_id": str(row["tenant_id"]), "ready_chunks": row["ready_chunks"]}
            for row in rows
        ]

    # =================================================================
    # CLAIMING
    # =================================================================

    @classmethod
    async def claim_next(
        cls, worker_id: str, parallel_limit: int, tenant_limits: dict[str, int] | None = None
    ) -> ChunkJob | None:
        """
        Atomically claim the next eligible chunk for worker_id.

        Concurrent claimers skip rows another transaction has locked
        (FOR UPDATE SKIP LOCKED), so no two callers get the same chunk.

        The tenant's parallel limit is enforced under a per-tenant advisory
        lock: the processing count is re-read after the lock is taken, and
        the lock is held until the claim commits. If the tenant is full on
        the re-read, the round ends and the next round excludes it.
        """
        limits = tenant_limits or {}
        full_tenants: list[str] = []

        for _ in range(cls.MAX_CLAIM_ROUNDS):
            async with await get_db_transaction() as conn:
                candidate = await fetch_one(
                    cls.CLAIM_CANDIDATE_QUERY, (Jsonb(limits), parallel_limit, full_tenants), connection=conn
                )
                if not candidate:
                    return None

                tenant_id = candidate["tenant_id"]
                await fetch_val("SELECT pg_advisory_xact_lock(hashtext(%s::text))", (tenant_id,), connection=conn)
                in_flight = await fetch_val(
                    "SELECT COUNT(*) FROM chunk_jobs WHERE tenant_id::text = %s AND status = 'processing'",
                    (tenant_id,),
                    connection=conn,
                )
                limit = int(limits.get(tenant_id, parallel_limit))
                if int(in_flight or 0) >= limit:
                    logger.debug("Tenant at parallel limit", tenant_id=tenant_id, in_flight=in_flight, limit=limit)
                    full_tenants.append(tenant_id)
                    continue

                row = await fetch_one(cls.CLAIM_UPDATE_QUERY, (worker_id, candidate["id"]), connection=conn)
            break
        else:
            return None

        chunk = cls._row_to_chunk(row)
        if chunk:
            logger.info(
                "Chunk claimed",
                chunk_id=chunk.id,
                job_id=chunk.sync_job_id,
                chunk_number=chunk.chunk_number,
                attempt=chunk.attempts,
                worker_id=worker_id,
            )
        return chunk

    @classmethod
    async def release_claim(cls, chunk_id: str, worker_id: str, retry_at: datetime | None) -> bool:
        """Hand a claimed chunk back to pending without consuming the attempt."""
        query = """
            UPDATE chunk_jobs
            SET status = 'pending',
                attempts = GREATEST(attempts - 1, 0),
                worker_id = NULL,
                started_at = NULL,
                next_retry_at = %s,
                updated_at = NOW()
            WHERE id = %s
              AND status = 'processing'
              AND worker_id = %s
        """
        released = await execute_query(query, (retry_at, chunk_id, worker_id))
        if released:
            logger.info("Chunk claim released", chunk_id=chunk_id, worker_id=worker_id, retry_at=retry_at)
        return released > 0

    @classmethod
    async def save_checkpoint(cls, chunk_id: str, worker_id: str, data: dict) -> bool:
        query = """
            UPDATE chunk_jobs
            SET checkpoint_data = %s,
                updated_at = NOW()
            WHERE id = %s
              AND status = 'processing'
              AND worker_id = %s
        """
        return await execute_query(query, (Jsonb(data), chunk_id, worker_id)) > 0

    # =================================================================
    # OUTCOMES
    # =================================================================

    @classmethod
    async def record_completion(
        cls, chunk_id: str, result: ExecutionResult, worker_id: str | None = None
    ) -> ChunkOutcome:
        """
        Mark a chunk completed and recompute its parent.

        Accepted from processing, and from pending when a reclaimed chunk's
        original worker finishes late. A second completion is a no-op.
        """
        query = f"""
            UPDATE chunk_jobs
            SET status = 'completed',
                completed_at = NOW(),
                updated_at = NOW(),
                emails_processed = %s,
                emails_failed = %s,
                duration_ms = %s,
                checkpoint_data = COALESCE(%s, checkpoint_data),
                next_retry_at = NULL,
                error_category = NULL,
                error_message = NULL
            WHERE id = %s
              AND status IN ('processing', 'pending')
            RETURNING {cls.CHUNK_SELECT_COLUMNS}
        """

        async with await get_db_transaction() as conn:
            job, current = await cls._lock_parent_of(chunk_id, conn, operation="complete")
            if job.status == "cancelled":
                return cls._skipped(current, job, "job_cancelled")

            row = await fetch_one(
                query,
                (
                    result.emails_processed,
                    result.emails_failed,
                    result.duration_ms,
                    Jsonb(result.checkpoint) if result.checkpoint is not None else None,
                    chunk_id,
                ),
                connection=conn,
            )
            if not row:
                return cls._skipped(current, job, "already_final")

            chunk = cls._row_to_chunk(row)
            outcome = await cls._recompute_parent(conn, job, chunk)

        logger.info(
            "Chunk completed",
            chunk_id=chunk_id,
            job_id=job.id,
            worker_id=worker_id,
            emails_processed=result.emails_processed,
            job_status=outcome.job_status,
        )
        return outcome

    @classmethod
    async def record_failure(
        cls,
        chunk_id: str,
        *,
        worker_id: str | None,
        category: str,
        message: str | None,
        retry_at: datetime | None,
        checkpoint: dict | None = None,
        failure_reason: str | None = None,
        error_context: dict | None = None,
    ) -> ChunkOutcome:
        """
        Apply a failure report.

        retry_at set: back to pending with next_retry_at. retry_at None:
        terminal failure plus a chunk dead letter. Only the owning worker's
        report is accepted (worker_id None skips the ownership check).
        """
        truncated_error = message[:500] if message else None
        checkpoint_param = Jsonb(checkpoint) if checkpoint is not None else None

        if retry_at is not None:
            query = f"""
                UPDATE chunk_jobs
                SET status = 'pending',
                    worker_id = NULL,
                    started_at = NULL,
                    next_retry_at = %s,
                    updated_at = NOW(),
                    last_error_at = NOW(),
                    error_category = %s,
                    error_message = %s,
                    checkpoint_data = COALESCE(%s, checkpoint_data)
                WHERE id = %s
                  AND status = 'processing'
                  AND (%s::text IS NULL OR worker_id = %s)
                RETURNING {cls.CHUNK_SELECT_COLUMNS}
            """
            params = (retry_at, category, truncated_error, checkpoint_param, chunk_id, worker_id, worker_id)
        else:
            query = f"""
                UPDATE chunk_jobs
                SET status = 'failed',
                    worker_id = NULL,
                    completed_at = NOW(),
                    next_retry_at = NULL,
                    updated_at = NOW(),
                    last_error_at = NOW(),
                    error_category = %s,
                    error_message = %s,
                    checkpoint_data = COALESCE(%s, checkpoint_data)
                WHERE id = %s
                  AND status = 'processing'
                  AND (%s::text IS NULL OR worker_id = %s)
                RETURNING {cls.CHUNK_SELECT_COLUMNS}
            """
            params = (category, truncated_error, checkpoint_param, chunk_id, worker_id, worker_id)

        async with await get_db_transaction() as conn:
            job, current = await cls._lock_parent_of(chunk_id, conn, operation="fail")
            if job.status == "cancelled":
                return cls._skipped(current, job, "job_cancelled")

            row = await fetch_one(query, params, connection=conn)
            if not row:
                if current.status in TERMINAL_CHUNK_STATUSES:
                    reason = "already_final"
                elif current.status == "processing":
                    reason = "stale_worker"
                else:
                    reason = "not_processing"
                return cls._skipped(current, job, reason)

            chunk = cls._row_to_chunk(row)

            chunk_dead_lettered = False
            if retry_at is None:
                record = await DeadLetterRepository.insert(
                    tenant_id=chunk.tenant_id,
                    mailbox_id=chunk.mailbox_id,
                    unit_type="chunk_job",
                    unit_id=chunk.id,
                    failure_reason=failure_reason or f"{category}: retries exhausted",
                    error_category=category,
                    retry_count=chunk.attempts,
                    last_error_message=truncated_error,
                    unit_snapshot=to_snapshot(chunk),
                    error_context=error_context,
                    connection=conn,
                )
                chunk_dead_lettered = record is not None

            outcome = await cls._recompute_parent(
                conn, job, chunk, failure_category=category, failure_message=truncated_error
            )
            outcome.dead_lettered = outcome.dead_lettered or chunk_dead_lettered

        logger.info(
            "Chunk failure recorded",
            chunk_id=chunk_id,
            job_id=job.id,
            worker_id=worker_id,
            error_category=category,
            chunk_status=chunk.status,
            next_retry_at=retry_at,
            job_status=outcome.job_status,
        )
        return outcome

    # =================================================================
    # RECOVERY
    # =================================================================

    @classmethod
    async def reset_stuck(cls, timeout_minutes: int) -> list[dict[str, Any]]:
        """
        Return processing chunks older than the timeout to pending.

        Attempts are left unchanged. Chunks with no attempts left are not
        touched here (see find_exhausted_stuck).
        """
        query = """
            WITH stuck AS (
                SELECT id, worker_id, started_at
                FROM chunk_jobs
                WHERE status = 'processing'
                  AND started_at < NOW() - (%s::int * INTERVAL '1 minute')
                  AND attempts < max_attempts
                FOR UPDATE SKIP LOCKED
            )
            UPDATE chunk_jobs c
            SET status = 'pending',
                worker_id = NULL,
                started_at = NULL,
                updated_at = NOW()
            FROM stuck
            WHERE c.id = stuck.id
            RETURNING c.id, c.sync_job_id, c.tenant_id, c.chunk_number, c.attempts,
                      stuck.worker_id AS previous_worker_id,
                      EXTRACT(EPOCH FROM (NOW() - stuck.started_at))::int AS stuck_seconds
        """
        rows = await fetch_all(query, (timeout_minutes,))
        return [
            {
                "chunk_id": str(row["id"]),
                "job_id": str(row["sync_job_id"]),
                "tenant_id": str(row["tenant_id"]),
                "chunk_number": row["chunk_number"],
                "attempts": row["attempts"],
                "previous_worker_id": row.get("previous_worker_id"),
                "stuck_seconds": row.get("stuck_seconds"),
            }
            for row in rows
        ]

    @classmethod
    async def find_exhausted_stuck(cls, timeout_minutes: int) -> list[ChunkJob]:
        query = f"""
            SELECT {cls.CHUNK_SELECT_COLUMNS}
            FROM chunk_jobs
            WHERE status = 'processing'
              AND started_at < NOW() - (%s::int * INTERVAL '1 minute')
              AND attempts >= max_attempts
        """
        rows = await fetch_all(query, (timeout_minutes,))
        return [cls._row_to_chunk(row) for row in rows]

    @classmethod
    async def recompute_job(cls, job_id: str) -> ChunkOutcome:
        """Rewrite a parent's stored status from its chunks if they diverge."""
        async with await get_db_transaction() as conn:
            job = await SyncJobRepository.lock_job(job_id, conn)
            if not job or job.status == "cancelled":
                return ChunkOutcome(
                    applied=False,
                    chunk=None,
                    job_id=job_id,
                    job_status=job.status if job else None,
                    skip_reason="job_cancelled" if job else "job_missing",
                )
            return await cls._recompute_parent(conn, job, None)

    @classmethod
    async def force_reset(
        cls, chunk_id: str, *, reset_attempts: bool = False, reason: str | None = None
    ) -> tuple[str, ChunkOutcome]:
        """
        Unconditionally return one chunk to pending.

        Without reset_attempts the chunk keeps its attempt count but always
        leaves with at least one attempt left, so it stays claimable.

        Returns (previous chunk status, outcome of the parent recompute).
        """
        query = f"""
            UPDATE chunk_jobs
            SET status = 'pending',
                worker_id = NULL,
                started_at = NULL,
                completed_at = NULL,
                next_retry_at = NULL,
                updated_at = NOW(),
                attempts = CASE WHEN %s THEN 0 ELSE LEAST(attempts, GREATEST(max_attempts - 1, 0)) END,
                error_message = %s
            WHERE id = %s
            RETURNING {cls.CHUNK_SELECT_COLUMNS}
        """

        async with await get_db_transaction() as conn:
            job, current = await cls._lock_parent_of(chunk_id, conn, operation="force_reset")
            if job.status == "cancelled":
                raise InvalidTransition(
                    f"Sync job {job.id} is cancelled; chunk {chunk_id} cannot be reset",
                    operation="force_reset",
                    recoverable=False,
                )

            note = f"Force reset: {reason or 'manual reset'}"
            row = await fetch_one(query, (reset_attempts, note[:500], chunk_id), connection=conn)
            chunk = cls._row_to_chunk(row)
            outcome = await cls._recompute_parent(conn, job, chunk)

        logger.warning(
            "Chunk force reset",
            chunk_id=chunk_id,
            job_id=job.id,
            previous_status=current.status,
            reset_attempts=reset_attempts,
        )
        return current.status, outcome

    @classmethod
    async def reset_all(
        cls, job_id: str, *, reset_attempts: bool = True, reason: str | None = None
    ) -> tuple[int, ChunkOutcome]:
        """Return every processing or failed chunk of a job to pending, each with an attempt left."""
        query = """
            UPDATE chunk_jobs
            SET status = 'pending',
                worker_id = NULL,
                started_at = NULL,
                completed_at = NULL,
                next_retry_at = NULL,
                updated_at = NOW(),
                attempts = CASE WHEN %s THEN 0 ELSE LEAST(attempts, GREATEST(max_attempts - 1, 0)) END,
                error_message = %s
            WHERE sync_job_id = %s
              AND status IN ('processing', 'failed')
        """

        async with await get_db_transaction() as conn:
            job = await SyncJobRepository.lock_job(job_id, conn)
            if not job:
                raise JobNotFound(job_id, operation="reset_all_chunks")
            if job.status == "cancelled":
                raise InvalidTransition(
                    f"Sync job {job_id} is cancelled and cannot be reset",
                    operation="reset_all_chunks",
                    recoverable=False,
                )

            note = f"Reset: {reason or 'manual reset'}"
            reset_count = await execute_query(query, (reset_attempts, note[:500], job_id), connection=conn)
            outcome = await cls._recompute_parent(conn, job, None)

        logger.warning("Sync job chunks reset", job_id=job_id, reset_count=reset_count)
        return reset_count, outcome

    # =================================================================
    # STATS
    # =================================================================

    @classmethod
    async def queue_stats(cls, stuck_timeout_minutes: int) -> dict[str, Any]:
        chunk_query = """
            SELECT
                COUNT(*) AS total_chunks,
                COUNT(*) FILTER (WHERE status = 'pending') AS pending,
                COUNT(*) FILTER (WHERE status = 'processing') AS processing,
                COUNT(*) FILTER (WHERE status = 'completed') AS completed,
                COUNT(*) FILTER (WHERE status = 'failed') AS failed,
                COUNT(*) FILTER (
                    WHERE status = 'pending'
                      AND attempts < max_attempts
                      AND (next_retry_at IS NULL OR next_retry_at <= NOW())
                ) AS ready,
                COUNT(*) FILTER (WHERE status = 'pending' AND next_retry_at > NOW()) AS waiting_retry,
                COUNT(*) FILTER (
                    WHERE status = 'processing'
                      AND started_at < NOW() - (%s::int * INTERVAL '1 minute')
                ) AS stuck,
                COUNT(DISTINCT tenant_id) FILTER (WHERE status IN ('pending', 'processing')) AS active_tenants,
                COUNT(DISTINCT worker_id) FILTER (WHERE status = 'processing') AS active_workers,
                AVG(duration_ms) FILTER (
                    WHERE status = 'completed' AND completed_at > NOW() - INTERVAL '1 hour'
                ) AS avg_duration_ms_last_hour,
                EXTRACT(EPOCH FROM (NOW() - MIN(created_at) FILTER (WHERE status = 'pending')))
                    AS oldest_pending_age_seconds
            FROM chunk_jobs
        """
        job_query = "SELECT status, COUNT(*) AS count FROM sync_jobs GROUP BY status"

        chunk_row = await fetch_one(chunk_query, (stuck_timeout_minutes,)) or {}
        job_rows = await fetch_all(job_query)

        stats = dict(chunk_row)
        stats["jobs_by_status"] = {row["status"]: row["count"] for row in job_rows}
        return stats

    @classmethod
    async def performance_stats(cls, days: int = 7) -> dict[str, Any]:
        summary_query = """
            SELECT
                COUNT(*) AS total_chunks,
                COUNT(*) FILTER (WHERE status = 'completed') AS completed,
                COUNT(*) FILTER (WHERE status = 'failed') AS failed,
                AVG(duration_ms) FILTER (WHERE status = 'completed') AS avg_duration_ms,
                AVG(emails_processed * 1000.0 / NULLIF(duration_ms, 0))
                    FILTER (WHERE status = 'completed') AS avg_emails_per_second
            FROM chunk_jobs
            WHERE created_at > NOW() - (%s::int * INTERVAL '1 day')
        """
        by_size_query = """
            SELECT
                chunk_size,
                COUNT(*) AS samples,
                AVG(emails_processed * 1000.0 / NULLIF(duration_ms, 0)) AS emails_per_second
            FROM chunk_jobs
            WHERE status = 'completed'
              AND duration_ms > 0
              AND completed_at > NOW() - (%s::int * INTERVAL '1 day')
            GROUP BY chunk_size
            ORDER BY emails_per_second DESC NULLS LAST
        """

        summary = await fetch_one(summary_query, (days,)) or {}
        by_size = await fetch_all(by_size_query, (days,))
        return {"summary": dict(summary), "by_chunk_size": [dict(row) for row in by_size]}

    # =================================================================
    # INTERNALS
    # =================================================================

    @classmethod
    async def _lock_parent_of(
        cls, chunk_id: str, conn: psycopg.AsyncConnection, operation: str
    ) -> tuple[SyncJob, ChunkJob]:
        current = await cls.get_chunk(chunk_id, connection=conn)
        if not current:
            raise ChunkNotFound(chunk_id, operation=operation)

        job = await SyncJobRepository.lock_job(current.sync_job_id, conn)
        if not job:
            raise ChunkRepositoryError(
                f"Parent job {current.sync_job_id} missing for chunk {chunk_id}",
                operation=operation,
                recoverable=False,
            )

        # Re-read under the parent lock
        current = await cls.get_chunk(chunk_id, connection=conn)
        return job, current

    @classmethod
    def _skipped(cls, chunk: ChunkJob, job: SyncJob, reason: str) -> ChunkOutcome:
        logger.info("Chunk transition skipped", chunk_id=chunk.id, job_id=job.id, reason=reason)
        return ChunkOutcome(
            applied=False,
            chunk=chunk,
            job_id=job.id,
            job_status=job.status,
            previous_job_status=job.status,
            skip_reason=reason,
        )

    @classmethod
    async def _recompute_parent(
        cls,
        conn: psycopg.AsyncConnection,
        job: SyncJob,
        chunk: ChunkJob | None,
        *,
        failure_category: str | None = None,
        failure_message: str | None = None,
    ) -> ChunkOutcome:
        """
        Project chunk counts onto the (already locked) parent and persist it.

        A parent that fails here is dead-lettered in the same transaction.
        """
        counts, emails_processed, emails_failed = await cls.count_chunks(job.id, connection=conn)
        status = derive_job_status(counts)

        transitioned = False
        if status == job.status:
            await SyncJobRepository.update_totals(job.id, emails_processed, emails_failed, connection=conn)
        else:
            transitioned = await SyncJobRepository.apply_aggregate(
                job.id,
                status,
                counts,
                emails_processed,
                emails_failed,
                error_category=failure_category or job.error_category,
                error_message=failure_message or job.error_message,
                connection=conn,
            )

        dead_lettered = False
        if transitioned and status == "failed":
            snapshot = to_snapshot(job)
            snapshot.update(status="failed", emails_processed=emails_processed, emails_failed=emails_failed)
            record = await DeadLetterRepository.insert(
                tenant_id=job.tenant_id,
                mailbox_id=job.mailbox_id,
                unit_type="sync_job",
                unit_id=job.id,
                failure_reason="no remaining chunks can make progress",
                error_category=failure_category or job.error_category,
                retry_count=chunk.attempts if chunk else job.attempts,
                last_error_message=failure_message or job.error_message,
                unit_snapshot=snapshot,
                error_context={
                    "chunks": {
                        "total": counts.total,
                        "completed": counts.completed,
                        "failed": counts.failed,
                    },
                    "last_chunk_id": chunk.id if chunk else None,
                },
                connection=conn,
            )
            dead_lettered = record is not None

        return ChunkOutcome(
            applied=True,
            chunk=chunk,
            job_id=job.id,
            job_status=status if (transitioned or status == job.status) else job.status,
            previous_job_status=job.status,
            job_transitioned=transitioned,
            pending_chunks=counts.pending,
            processing_chunks=counts.processing,
            completed_chunks=counts.completed,
            failed_chunks=counts.failed,
            total_chunks=counts.total,
            dead_lettered=dead_lettered,
        )
