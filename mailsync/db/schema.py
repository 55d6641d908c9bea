"""
Schema bootstrap for the sync engine tables.

Usage:
    mailsync-worker apply_schema
"""

from pathlib import Path

import psycopg

from mailsync.db.helpers import DatabaseError
from mailsync.db.pool import db_pool
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"


def load_schema_sql() -> str:
    return SCHEMA_PATH.read_text(encoding="utf-8")


async def apply_schema() -> None:
    """Create tables and indexes if they do not exist (idempotent)."""
    schema_sql = load_schema_sql()

    try:
        async with db_pool.transaction() as conn:
            # No parameters, so psycopg runs the whole script in one round trip
            await conn.execute(schema_sql)
    except psycopg.Error as e:
        logger.error("Schema application failed", error=str(e))
        raise DatabaseError(f"Schema application failed: {e}", operation="apply_schema") from e

    logger.info("Schema applied", path=str(SCHEMA_PATH))
