# mailsync/routes/health.py
"""
Health check endpoints with database pool and outbox monitoring.
"""

import time

from fastapi import APIRouter

from mailsync.config import settings
from mailsync.db.pool import db_health_check
from mailsync.features.sync_engine.services.invocation_trigger import trigger_outbox
from mailsync.services.redis_client import fast_redis

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "mailsync"}


@router.get("/readyz")
async def readyz():
    """
    Readiness check. The database is required; Redis only backs the trigger
    outbox, so a Redis outage is reported but does not fail readiness.
    """
    checks = {}
    overall_ok = True

    # 1) Database pool
    t0 = time.time()
    db_health = await db_health_check()
    is_healthy = db_health.get("healthy", False)
    checks["database"] = {
        "ok": is_healthy,
        "latency_ms": round((time.time() - t0) * 1000, 1),
    }
    if "pool_stats" in db_health:
        checks["database"].update(db_health["pool_stats"])
    if "warnings" in db_health:
        checks["database"]["warnings"] = db_health["warnings"]
    if not is_healthy:
        checks["database"]["error"] = db_health.get("error", "Database unhealthy")
    overall_ok = overall_ok and is_healthy

    # 2) Redis (outbox)
    t0 = time.time()
    redis_ok = await fast_redis.ping()
    checks["redis"] = {
        "ok": redis_ok,
        "latency_ms": round((time.time() - t0) * 1000, 1),
        "required": False,
    }
    if redis_ok:
        checks["redis"]["outbox_pending"] = await trigger_outbox.pending_count()

    checks["configuration"] = {
        "ok": True,
        "environment": settings.environment,
        "worker_url": settings.SYNC_WORKER_URL,
    }

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    return await db_health_check()
