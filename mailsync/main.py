"""
mailsync API: sync job creation, progress, worker invocation and operator
endpoints, with database pool and Redis lifecycle management.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from mailsync.config import settings
from mailsync.db.pool import db_pool
from mailsync.features.sync_engine.api.router import internal_router, operator_router, router as sync_router
from mailsync.features.sync_engine.services.invocation_trigger import trigger_outbox
from mailsync.infrastructure.observability.logging import get_logger, setup_logging
from mailsync.middleware.request_context import RequestContextMiddleware
from mailsync.routes import health
from mailsync.services.redis_client import fast_redis

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    startup_tasks = []

    try:
        logger.info("Initializing database pool")
        await db_pool.initialize()
        startup_tasks.append("database_pool")
    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)
        raise

    # The outbox fails open: without Redis, triggers are delivered directly
    try:
        logger.info("Initializing Redis connection")
        await fast_redis.initialize()
        startup_tasks.append("redis")
    except RuntimeError as e:
        logger.warning("Redis unavailable, trigger outbox disabled", error=str(e))

    logger.info("Services initialized", services=startup_tasks)

    yield

    logger.info("Application shutting down")

    shutdown_errors = []

    # Let in-flight trigger deliveries finish before closing Redis
    await trigger_outbox.drain()

    if "redis" in startup_tasks:
        try:
            logger.info("Closing Redis connection")
            await fast_redis.close()
        except Exception as e:
            logger.error("Error closing Redis", error=str(e))
            shutdown_errors.append(f"Redis: {e}")

    try:
        logger.info("Closing database pool")
        await db_pool.close()
    except Exception as e:
        logger.error("Error closing database pool", error=str(e))
        shutdown_errors.append(f"Database: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="mailsync",
    description="Per-tenant mailbox sync job scheduling and recovery engine",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(sync_router)
app.include_router(internal_router)
app.include_router(operator_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
