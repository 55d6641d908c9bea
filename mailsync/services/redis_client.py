"""
Pooled redis.asyncio client.

The sync engine only uses Redis for the trigger outbox, a plain list of
pending notifications. Every helper logs and returns a falsy value on
failure so callers can fall back to direct delivery.
"""

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from mailsync.config import settings
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class FastRedisClient:
    """Redis operations over a shared connection pool"""

    def __init__(self, url: str | None = None):
        self.url = url
        self.pool = None
        self.client = None
        self._initialized = False

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        redis_url = self.url or settings.REDIS_URL
        try:
            logger.info("Attempting Redis connection", url_preview=redis_url[:30] + "...")

            self.pool = ConnectionPool.from_url(
                redis_url,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                retry_on_timeout=True,
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info("Redis client initialized", max_connections=settings.REDIS_MAX_CONNECTIONS)

        except (redis.RedisError, OSError) as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Redis client closed")
        except (redis.RedisError, OSError) as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()

    async def ping(self) -> bool:
        try:
            await self._ensure_initialized()
            return bool(await self.client.ping())
        except (redis.RedisError, RuntimeError, OSError) as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def push_to_list(self, key: str, value: str, left: bool = True) -> bool:
        """Push a value onto a Redis list."""
        try:
            await self._ensure_initialized()
            if left:
                result = await self.client.lpush(key, value)
            else:
                result = await self.client.rpush(key, value)
            return result > 0
        except (redis.RedisError, RuntimeError, OSError) as e:
            logger.error("Redis LIST push failed", key=key[:30], value_preview=value[:30], error=str(e))
            return False

    async def remove_from_list(self, key: str, value: str) -> bool:
        """Remove every occurrence of value from the list."""
        try:
            await self._ensure_initialized()
            removed = await self.client.lrem(key, 0, value)
            return removed > 0
        except (redis.RedisError, RuntimeError, OSError) as e:
            logger.error("Redis LIST remove failed", key=key[:30], value_preview=value[:30], error=str(e))
            return False

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> list[str]:
        """Return a range of values from a list."""
        try:
            await self._ensure_initialized()
            result = await self.client.lrange(key, start, end)
            return [str(item) for item in result] if result else []
        except (redis.RedisError, RuntimeError, OSError) as e:
            logger.error("Redis LRANGE failed", key=key[:30], error=str(e))
            return []

    async def list_length(self, key: str) -> int:
        try:
            await self._ensure_initialized()
            return int(await self.client.llen(key))
        except (redis.RedisError, RuntimeError, OSError) as e:
            logger.error("Redis LLEN failed", key=key[:30], error=str(e))
            return 0


# Global instance
fast_redis = FastRedisClient()
