"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable, opens the database pool and Redis, and delegates to the
appropriate scheduler.

Jobs:
    recovery_sweep     periodic stuck-chunk reclaim (loops)
    retention_cleanup  daily retention enforcement (loops)
    trigger_relay      outbox re-delivery (loops)
    sync_invocation    one worker invocation, then exit
    apply_schema       create tables and indexes, then exit
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from mailsync.config import settings
from mailsync.db.pool import db_pool
from mailsync.db.schema import apply_schema
from mailsync.features.sync_engine.services.invocation_trigger import trigger_outbox
from mailsync.features.sync_engine.services.worker_runner import run_worker_invocation
from mailsync.infrastructure.observability.logging import get_logger, setup_logging
from mailsync.jobs.recovery_sweep_job import start_recovery_sweep_scheduler
from mailsync.jobs.retention_cleanup_job import start_retention_cleanup_scheduler
from mailsync.jobs.trigger_relay_job import start_trigger_relay_scheduler
from mailsync.services.redis_client import fast_redis

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[object]]


async def run_sync_invocation() -> None:
    summary = await run_worker_invocation()
    logger.info("Sync invocation finished", **summary)


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "recovery_sweep": start_recovery_sweep_scheduler,
    "retention_cleanup": start_retention_cleanup_scheduler,
    "trigger_relay": start_trigger_relay_scheduler,
    "sync_invocation": run_sync_invocation,
    "apply_schema": apply_schema,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "recovery_sweep").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await db_pool.initialize()
    try:
        await fast_redis.initialize()
    except RuntimeError as e:
        logger.warning("Redis unavailable, trigger outbox disabled", error=str(e))

    try:
        await JOB_REGISTRY[name]()
    finally:
        await trigger_outbox.drain()
        await fast_redis.close()
        await db_pool.close()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL)
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
