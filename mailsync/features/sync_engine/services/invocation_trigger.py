"""
Invocation trigger and post-commit outbox.

The engine has no resident worker loop: whenever a transition leaves work
outstanding it asks the runtime to invoke a worker "now". Delivery is
best-effort and at-least-once, so duplicate invocations are expected.

Usage:
    from mailsync.features.sync_engine.services.invocation_trigger import trigger_outbox

    # after the transaction that created the work has committed
    await trigger_outbox.enqueue(job_id, "job_created", chunks_remaining=3)

Design:
    - enqueue() records the notification in a Redis list, then delivers it
      on a background task and removes it once delivery succeeded.
    - If Redis is unavailable the notification is delivered directly.
    - trigger_relay re-delivers whatever is left in the list; the recovery
      sweep re-notifies jobs with ready work as the last line of defence.
"""

import asyncio
import json
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import uuid4

import httpx

from mailsync.config import settings
from mailsync.infrastructure.observability.logging import get_logger
from mailsync.services.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)

OUTBOX_KEY = "mailsync:trigger_outbox"
TRIGGER_SOURCE = "mailsync"


class InvocationTrigger(Protocol):
    async def notify(self, job_id: str, reason: str, chunks_remaining: int | None = None) -> bool: ...


class HttpInvocationTrigger:
    """POSTs the trigger payload to the worker invocation endpoint."""

    def __init__(
        self,
        url: str | None = None,
        service_key: str | None = None,
        timeout: float | None = None,
    ):
        self.url = url or settings.SYNC_WORKER_URL
        self.service_key = service_key or settings.SYNC_SERVICE_KEY
        self.timeout = timeout or settings.TRIGGER_TIMEOUT_SECONDS

    def build_payload(self, job_id: str, reason: str, chunks_remaining: int | None) -> dict[str, Any]:
        return {
            "trigger_source": TRIGGER_SOURCE,
            "parent_sync_job_id": job_id,
            "reason": reason,
            "chunks_remaining": chunks_remaining,
        }

    async def notify(self, job_id: str, reason: str, chunks_remaining: int | None = None) -> bool:
        """Fire one invocation request. Returns False instead of raising."""
        headers = {
            "Authorization": f"Bearer {self.service_key}",
            "Content-Type": "application/json",
        }
        payload = self.build_payload(job_id, reason, chunks_remaining)

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload, headers=headers)
        except httpx.RequestError as e:
            logger.warning(
                "Worker trigger request failed",
                job_id=job_id,
                reason=reason,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        if not response.is_success:
            logger.warning(
                "Worker trigger rejected",
                job_id=job_id,
                reason=reason,
                status_code=response.status_code,
            )
            return False

        logger.debug("Worker triggered", job_id=job_id, reason=reason, chunks_remaining=chunks_remaining)
        return True


class TriggerOutbox:
    """Records trigger notifications before delivering them."""

    def __init__(
        self,
        trigger: InvocationTrigger | None = None,
        redis_client: FastRedisClient | None = None,
        key: str = OUTBOX_KEY,
    ):
        self.trigger = trigger or HttpInvocationTrigger()
        self.redis = redis_client or fast_redis
        self.key = key
        self._tasks: set[asyncio.Task] = set()

    def _build_entry(self, job_id: str, reason: str, chunks_remaining: int | None) -> str:
        return json.dumps(
            {
                "id": uuid4().hex,
                "job_id": job_id,
                "reason": reason,
                "chunks_remaining": chunks_remaining,
                "enqueued_at": datetime.now(UTC).isoformat(),
            }
        )

    async def enqueue(self, job_id: str, reason: str, chunks_remaining: int | None = None) -> bool:
        """
        Record a notification and start delivering it. Never raises.

        Returns:
            True if delivery was scheduled, False if nothing could be done
        """
        try:
            entry = self._build_entry(job_id, reason, chunks_remaining)
            recorded = await self.redis.push_to_list(self.key, entry)
            if not recorded:
                logger.warning("Trigger outbox unavailable, delivering directly", job_id=job_id, reason=reason)

            task = asyncio.create_task(
                self._deliver(job_id, reason, chunks_remaining, entry if recorded else None)
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return True

        except (RuntimeError, TypeError, ValueError) as e:
            logger.error("Failed to enqueue worker trigger", job_id=job_id, reason=reason, error=str(e))
            return False

    async def _deliver(
        self, job_id: str, reason: str, chunks_remaining: int | None, entry: str | None
    ) -> bool:
        try:
            delivered = await self.trigger.notify(job_id, reason, chunks_remaining)
        except Exception as e:
            logger.error(
                "Worker trigger raised",
                job_id=job_id,
                reason=reason,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        if delivered and entry is not None:
            await self.redis.remove_from_list(self.key, entry)
        return delivered

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown, tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def pending_count(self) -> int:
        return await self.redis.list_length(self.key)

    async def relay_pending(self, min_age_seconds: int = 0, limit: int = 500) -> dict[str, int]:
        """
        Re-deliver notifications still sitting in the outbox.

        Entries younger than min_age_seconds are skipped; their original
        delivery may still be in flight.
        """
        entries = await self.redis.list_range(self.key, 0, limit - 1)
        now = datetime.now(UTC)
        result = {"pending": len(entries), "delivered": 0, "failed": 0, "skipped": 0, "discarded": 0}

        for entry in entries:
            try:
                payload = json.loads(entry)
                enqueued_at = datetime.fromisoformat(payload["enqueued_at"])
                job_id = payload["job_id"]
            except (ValueError, KeyError, TypeError):
                logger.warning("Discarding malformed outbox entry", entry_preview=entry[:60])
                await self.redis.remove_from_list(self.key, entry)
                result["discarded"] += 1
                continue

            if (now - enqueued_at).total_seconds() < min_age_seconds:
                result["skipped"] += 1
                continue

            if await self._deliver(job_id, payload.get("reason", "relay"), payload.get("chunks_remaining"), entry):
                result["delivered"] += 1
            else:
                result["failed"] += 1

        if result["pending"]:
            logger.info("Trigger outbox relayed", **result)
        return result


trigger_outbox = TriggerOutbox()
