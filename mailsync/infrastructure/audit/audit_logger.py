"""
AuditLogger - append-only trail of scheduler and operator actions.

Every job creation, cancellation, failure, recovery reset and manual
operator action is written to:
1. Structured logs (stdout) - real-time monitoring
2. The sync_audit_log table - immutable, queryable

Usage:
    from mailsync.infrastructure.audit import audit_logger

    await audit_logger.log(
        actor="system:recovery_sweep",
        action="chunk_reset_stuck",
        tenant_id=tenant_id,
        job_id=job_id,
        chunk_id=chunk_id,
        reason="processing longer than 10 minutes",
        metadata={"previous_worker_id": "worker-abc", "stuck_seconds": 660},
    )

Design Principles:
- Never fail the scheduler operation if audit logging fails
- Capture enough context to reconstruct what happened to a unit
"""

from datetime import UTC, datetime
from typing import Any

import psycopg
from psycopg.types.json import Jsonb

from mailsync.db.pool import db_pool
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

RECOVERY_SWEEP_ACTOR = "system:recovery_sweep"
SCHEDULER_ACTOR = "system:scheduler"


class AuditLogger:
    """
    Centralized audit logging service.

    All methods are static and never raise; they return False when the
    database write failed.
    """

    @staticmethod
    async def log(
        actor: str,
        action: str,
        tenant_id: str | None = None,
        job_id: str | None = None,
        chunk_id: str | None = None,
        reason: str | None = None,
        request_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """
        Log an audit event to structured logs and the database.

        Args:
            actor: Who acted (user id, "service", "system:recovery_sweep", ...)
            action: Action name (e.g., "sync_job_created", "chunk_force_reset")
            tenant_id: Owning tenant, when known
            job_id: Parent sync job affected
            chunk_id: Chunk affected
            reason: Free-form reason supplied by the actor or the system
            request_id: Request correlation ID for tracing
            metadata: Additional context (JSON-serializable dict)

        Returns:
            True if logged successfully, False if failed (never raises)
        """
        logger.info(
            "Audit event",
            audit_action=action,
            actor=actor,
            tenant_id=tenant_id,
            job_id=job_id,
            chunk_id=chunk_id,
            reason=reason,
            request_id=request_id,
        )

        try:
            async with db_pool.connection() as conn:
                await conn.execute(
                    """
                    INSERT INTO sync_audit_log (
                        tenant_id, actor, action, reason, job_id, chunk_id,
                        metadata, request_id, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        tenant_id,
                        actor,
                        action,
                        reason,
                        job_id,
                        chunk_id,
                        Jsonb(metadata or {}),
                        request_id,
                        datetime.now(UTC),
                    ),
                )

            return True

        except (psycopg.Error, RuntimeError) as e:
            # Never fail the caller; keep enough context to recreate the row
            logger.error(
                "CRITICAL: Failed to write audit log to database",
                error=str(e),
                error_type=type(e).__name__,
                fallback_data={
                    "tenant_id": tenant_id,
                    "actor": actor,
                    "action": action,
                    "reason": reason,
                    "job_id": job_id,
                    "chunk_id": chunk_id,
                    "metadata": metadata,
                    "request_id": request_id,
                    "timestamp": datetime.now(UTC).isoformat(),
                },
            )
            return False

    @staticmethod
    async def log_recovery_action(
        action: str,
        tenant_id: str | None,
        job_id: str | None,
        chunk_id: str | None = None,
        reason: str | None = None,
        **metadata: Any,
    ) -> bool:
        """Convenience wrapper for automatic recovery (sweep) actions."""
        return await AuditLogger.log(
            actor=RECOVERY_SWEEP_ACTOR,
            action=action,
            tenant_id=tenant_id,
            job_id=job_id,
            chunk_id=chunk_id,
            reason=reason,
            metadata=metadata,
        )

    @staticmethod
    async def log_operator_action(
        actor: str,
        action: str,
        tenant_id: str | None,
        job_id: str | None = None,
        chunk_id: str | None = None,
        reason: str | None = None,
        request_id: str | None = None,
        **metadata: Any,
    ) -> bool:
        """Manual incident-response actions always carry actor and reason."""
        return await AuditLogger.log(
            actor=actor,
            action=action,
            tenant_id=tenant_id,
            job_id=job_id,
            chunk_id=chunk_id,
            reason=reason or "manual intervention",
            request_id=request_id,
            metadata=metadata,
        )

    @staticmethod
    async def delete_older_than(days: int) -> int:
        """Retention for the audit trail itself. Returns rows deleted."""
        async with db_pool.connection() as conn:
            cursor = await conn.execute(
                "DELETE FROM sync_audit_log WHERE created_at < NOW() - (%s::int * INTERVAL '1 day')",
                (days,),
            )
            return cursor.rowcount


# Global singleton instance
audit_logger = AuditLogger()
