"""
Persistence for the dead-letter archive.

Rows are insert-once per (unit_type, unit_id); only the review columns are
ever updated afterwards.
"""

import psycopg
from psycopg.types.json import Jsonb

from mailsync.db.helpers import DatabaseError, fetch_all, fetch_one
from mailsync.features.sync_engine.domain.models import DeadLetterRecord
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DeadLetterRepositoryError(DatabaseError):
    """More specific exception for dead-letter persistence failures."""


class DeadLetterRepository:
    SELECT_COLUMNS = """
        id, tenant_id, mailbox_id, unit_type, unit_id, failure_reason,
        error_category, retry_count, last_error_message, unit_snapshot,
        error_context, archived_at, reviewed, reviewed_at, reviewed_by,
        resolution_notes
    """

    @classmethod
    def _row_to_record(cls, row: dict | None) -> DeadLetterRecord | None:
        if not row:
            return None

        return DeadLetterRecord(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            mailbox_id=str(row["mailbox_id"]) if row.get("mailbox_id") else None,
            unit_type=row["unit_type"],
            unit_id=str(row["unit_id"]),
            failure_reason=row["failure_reason"],
            error_category=row.get("error_category"),
            retry_count=row.get("retry_count") or 0,
            last_error_message=row.get("last_error_message"),
            unit_snapshot=row.get("unit_snapshot") or {},
            error_context=row.get("error_context") or {},
            archived_at=row["archived_at"],
            reviewed=bool(row.get("reviewed")),
            reviewed_at=row.get("reviewed_at"),
            reviewed_by=row.get("reviewed_by"),
            resolution_notes=row.get("resolution_notes"),
        )

    @classmethod
    async def insert(
        cls,
        *,
        tenant_id: str,
        mailbox_id: str | None,
        unit_type: str,
        unit_id: str,
        failure_reason: str,
        error_category: str | None,
        retry_count: int,
        last_error_message: str | None,
        unit_snapshot: dict,
        error_context: dict | None = None,
        connection: psycopg.AsyncConnection | None = None,
    ) -> DeadLetterRecord | None:
        """
        Archive a unit. Returns None when the unit was already archived.
        """
        query = f"""
            INSERT INTO dead_letters (
                tenant_id, mailbox_id, unit_type, unit_id, failure_reason,
                error_category, retry_count, last_error_message,
                unit_snapshot, error_context
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (unit_type, unit_id) DO NOTHING
            RETURNING {cls.SELECT_COLUMNS}
        """

        row = await fetch_one(
            query,
            (
                tenant_id,
                mailbox_id,
                unit_type,
                unit_id,
                failure_reason[:500],
                error_category,
                retry_count,
                last_error_message[:500] if last_error_message else None,
                Jsonb(unit_snapshot),
                Jsonb(error_context or {}),
            ),
            connection=connection,
        )

        if row:
            logger.warning(
                "Unit moved to dead letters",
                unit_type=unit_type,
                unit_id=unit_id,
                tenant_id=tenant_id,
                error_category=error_category,
                retry_count=retry_count,
            )
        else:
            logger.info("Unit already in dead letters", unit_type=unit_type, unit_id=unit_id)

        return cls._row_to_record(row)

    @classmethod
    async def get(cls, record_id: str) -> DeadLetterRecord | None:
        query = f"SELECT {cls.SELECT_COLUMNS} FROM dead_letters WHERE id = %s"
        return cls._row_to_record(await fetch_one(query, (record_id,)))

    @classmethod
    async def list_records(
        cls, tenant_id: str | None = None, reviewed: bool | None = None, limit: int = 50
    ) -> list[DeadLetterRecord]:
        conditions = []
        params: list = []
        if tenant_id is not None:
            conditions.append("tenant_id = %s")
            params.append(tenant_id)
        if reviewed is not None:
            conditions.append("reviewed = %s")
            params.append(reviewed)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM dead_letters
            {where_clause}
            ORDER BY archived_at DESC
            LIMIT %s
        """
        params.append(limit)

        rows = await fetch_all(query, tuple(params))
        return [cls._row_to_record(row) for row in rows]

    @classmethod
    async def mark_reviewed(
        cls, record_id: str, reviewed_by: str, notes: str | None = None
    ) -> DeadLetterRecord | None:
        query = f"""
            UPDATE dead_letters
            SET reviewed = TRUE,
                reviewed_at = NOW(),
                reviewed_by = %s,
                resolution_notes = %s
            WHERE id = %s
            RETURNING {cls.SELECT_COLUMNS}
        """
        row = await fetch_one(query, (reviewed_by, notes, record_id))
        if row:
            logger.info("Dead letter reviewed", record_id=record_id, reviewed_by=reviewed_by)
        return cls._row_to_record(row)
