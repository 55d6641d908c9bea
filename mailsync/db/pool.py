"""
PostgreSQL connection pool for the sync engine, using psycopg_pool.

Every scheduler step (claim, outcome recording, sweeps) is a short
statement or a short transaction that locks one sync_jobs row. Connections
are configured so a worker never waits indefinitely behind another
transaction's row lock; it gets a lock timeout and the caller treats that
like any other transient database error.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from mailsync.config import settings
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

ENGINE_TABLES = ("sync_jobs", "chunk_jobs", "protection_state", "dead_letters", "sync_audit_log")

# Readiness thresholds
MAX_HEALTHY_UTILIZATION_PERCENT = 90
MAX_HEALTHY_PING_MS = 100


class DatabasePoolManager:
    """
    Owns the pool lifecycle and hands out connections and transactions.

    The pool is opened once per process (API or worker job) and closed on
    shutdown. Before initialize() every accessor raises RuntimeError.
    """

    def __init__(self):
        self.pool: AsyncConnectionPool | None = None
        self._initialized = False
        self._closed = False
        self.missing_tables: list[str] = []

    async def initialize(self) -> None:
        if self._initialized:
            logger.warning("Database pool already initialized")
            return

        if self._closed:
            raise RuntimeError("Cannot reinitialize closed pool")

        pool_config = self._get_pool_config()
        try:
            self.pool = AsyncConnectionPool(conninfo=settings.DATABASE_URL, open=False, **pool_config)
            await self.pool.open()
            await self.pool.wait()

            # connection() refuses to hand out connections until this is set
            self._initialized = True

            self.missing_tables = await self._find_missing_tables()
        except Exception as e:
            logger.error("Failed to initialize database pool", error=str(e))
            self._initialized = False
            if self.pool:
                try:
                    await self.pool.close()
                except Exception as close_error:
                    logger.warning("Error closing pool after failed init", error=str(close_error))
                self.pool = None
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        if self.missing_tables:
            logger.warning(
                "Sync engine tables missing, run `mailsync-worker apply_schema`",
                missing_tables=self.missing_tables,
            )

        logger.info(
            "Database pool initialized",
            min_size=pool_config["min_size"],
            max_size=pool_config["max_size"],
            timeout=pool_config["timeout"],
        )

    def _get_pool_config(self) -> dict[str, Any]:
        config = settings.get_db_pool_config()
        config.update(
            {
                "check": AsyncConnectionPool.check_connection,
                "configure": self._configure_connection,
            }
        )
        return config

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        """Per-connection session settings."""
        conn.row_factory = dict_row

        # Autocommit outside explicit transactions keeps idle connections out of INTRANS
        await conn.set_autocommit(True)

        await conn.execute(
            sql.SQL("SET application_name = {}").format(sql.Literal(f"mailsync-{settings.environment}"))
        )
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute(
            sql.SQL("SET statement_timeout = {}").format(sql.Literal(f"{settings.DB_STATEMENT_TIMEOUT_SECONDS}s"))
        )
        await conn.execute(
            sql.SQL("SET lock_timeout = {}").format(sql.Literal(f"{settings.DB_LOCK_TIMEOUT_SECONDS}s"))
        )

    async def _find_missing_tables(self) -> list[str]:
        """Return the engine tables that do not exist yet."""
        async with self.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    "SELECT name FROM unnest(%s::text[]) AS name WHERE to_regclass(name) IS NULL",
                    (list(ENGINE_TABLES),),
                )
                rows = await cur.fetchall()
        return [row["name"] for row in rows]

    async def close(self) -> None:
        if not self._initialized or self._closed:
            return

        logger.info("Closing database connection pool")
        try:
            if self.pool:
                await asyncio.wait_for(self.pool.close(), timeout=30.0)
            logger.info("Database pool closed")
        except TimeoutError:
            logger.warning("Database pool close timed out, forcing shutdown")
        finally:
            self._initialized = False
            self._closed = True

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """
        Borrow an autocommit connection.

        Usage:
            async with db_pool.connection() as conn:
                await conn.execute("SELECT 1")
        """
        if not self._initialized:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")

        if self._closed:
            raise RuntimeError("Database pool is closed")

        async with self.pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """
        Borrow a connection inside one transaction.

        Commits on success and rolls back on exception. Used where a chunk
        transition and its parent recompute must land together:

            async with db_pool.transaction() as conn:
                await conn.execute("SELECT ... FROM sync_jobs WHERE id = %s FOR UPDATE", (job_id,))
                await conn.execute("UPDATE chunk_jobs ...")
        """
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> dict[str, Any]:
        """Pool utilization, ping latency and schema readiness."""
        if not self._initialized:
            return {"healthy": False, "error": "Pool not initialized", "service": "database_pool"}

        if self._closed:
            return {"healthy": False, "error": "Pool is closed", "service": "database_pool"}

        try:
            stats = self.pool.get_stats()
            pool_size = stats.get("pool_size", 0)
            pool_available = stats.get("pool_available", 0)
            requests_waiting = stats.get("requests_waiting", 0)

            start_time = time.time()
            missing_tables = await self._find_missing_tables()
            ping_ms = (time.time() - start_time) * 1000
            self.missing_tables = missing_tables

        except (psycopg.Error, RuntimeError) as e:
            logger.error("Database pool health check failed", error=str(e))
            return {
                "healthy": False,
                "service": "database_pool",
                "error": str(e),
                "error_type": type(e).__name__,
            }

        pool_utilization = (pool_size - pool_available) / pool_size * 100 if pool_size > 0 else 0

        health_data = {
            "healthy": (
                not missing_tables
                and pool_utilization < MAX_HEALTHY_UTILIZATION_PERCENT
                and ping_ms < MAX_HEALTHY_PING_MS
            ),
            "service": "database_pool",
            "connection_time_ms": round(ping_ms, 2),
            "schema_ready": not missing_tables,
            "pool_stats": {
                "pool_size": pool_size,
                "pool_available": pool_available,
                "pool_utilization_percent": round(pool_utilization, 2),
                "requests_waiting": requests_waiting,
            },
        }

        warnings = []
        if missing_tables:
            warnings.append(f"Missing tables: {', '.join(missing_tables)}")
        if pool_utilization > 80:
            warnings.append(f"High pool utilization: {pool_utilization:.1f}%")
        if requests_waiting > 0:
            warnings.append(f"Requests waiting for connections: {requests_waiting}")
        if warnings:
            health_data["warnings"] = warnings

        return health_data


db_pool = DatabasePoolManager()


async def get_db_connection():
    return db_pool.connection()


async def get_db_transaction():
    return db_pool.transaction()


async def db_health_check() -> dict[str, Any]:
    return await db_pool.health_check()
