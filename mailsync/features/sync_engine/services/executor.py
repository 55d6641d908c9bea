"""
Work executor client.

The executor performs one chunk's mail-sync work. It must be safe to call
again with the same descriptor after a reclaim, either by being idempotent
or by resuming from the checkpoint it returned earlier.
"""

import asyncio
from typing import Any, Protocol

import httpx

from mailsync.config import settings
from mailsync.features.sync_engine.domain.models import ChunkDescriptor, ExecutionResult, ExecutorError
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

BACKOFF_FACTOR = 2


def _as_int(value: Any) -> int | None:
    """Whole seconds or status code from a header or JSON field; None if not numeric."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


class WorkExecutor(Protocol):
    async def execute(self, descriptor: ChunkDescriptor) -> ExecutionResult | ExecutorError: ...


class HttpWorkExecutor:
    """POSTs the chunk descriptor to SYNC_EXECUTOR_URL."""

    def __init__(
        self,
        url: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        service_key: str | None = None,
    ):
        self.url = url or settings.SYNC_EXECUTOR_URL
        self.timeout = timeout or settings.EXECUTOR_REQUEST_TIMEOUT_SECONDS
        self.max_retries = max_retries or settings.EXECUTOR_MAX_RETRIES
        self.service_key = service_key or settings.SYNC_SERVICE_KEY

    async def execute(self, descriptor: ChunkDescriptor) -> ExecutionResult | ExecutorError:
        try:
            response = await self._post_with_retry(descriptor.to_payload(), descriptor.chunk_id)
        except httpx.TimeoutException as e:
            return ExecutorError(message=f"Executor request timed out: {e}", category="timeout")
        except httpx.RequestError as e:
            return ExecutorError(message=f"Executor connection error: {e}", category="network")

        return self._parse_response(response)

    async def _post_with_retry(self, payload: dict[str, Any], chunk_id: str) -> httpx.Response:
        """
        POST with retry on transport errors only.

        HTTP error statuses are returned as-is; the engine classifies them.
        """
        headers = {
            "Authorization": f"Bearer {self.service_key}",
            "Content-Type": "application/json",
        }

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for attempt in range(1, self.max_retries + 1):
                try:
                    return await client.post(self.url, json=payload, headers=headers)
                except httpx.RequestError as exc:
                    if attempt >= self.max_retries:
                        raise

                    wait_time = BACKOFF_FACTOR**attempt
                    logger.warning(
                        "Executor request error, retrying",
                        chunk_id=chunk_id,
                        attempt=attempt,
                        wait_time=wait_time,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    await asyncio.sleep(wait_time)

        raise RuntimeError("Executor retry loop exhausted")

    def _parse_response(self, response: httpx.Response) -> ExecutionResult | ExecutorError:
        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}

        if not isinstance(data, dict):
            data = {}

        if not response.is_success:
            message, category = self._extract_error(data)
            return ExecutorError(
                message=message or response.text[:500] or f"Executor returned HTTP {response.status_code}",
                category=category,
                code=response.status_code,
                retry_after_seconds=_as_int(response.headers.get("Retry-After")),
                checkpoint=data.get("checkpoint"),
            )

        if "error" in data:
            message, category = self._extract_error(data)
            return ExecutorError(
                message=message,
                category=category,
                code=_as_int(data.get("code")),
                retry_after_seconds=_as_int(data.get("retry_after_seconds")),
                checkpoint=data.get("checkpoint"),
            )

        if not data:
            return ExecutorError(message="Executor returned an empty or invalid body", category="processing_error")

        return ExecutionResult(
            emails_processed=int(data.get("emails_processed") or 0),
            emails_failed=int(data.get("emails_failed") or 0),
            duration_ms=int(data.get("duration_ms") or 0),
            checkpoint=data.get("checkpoint"),
        )

    @staticmethod
    def _extract_error(data: dict[str, Any]) -> tuple[str | None, str | None]:
        error = data.get("error")
        if isinstance(error, dict):
            return error.get("message"), error.get("category") or data.get("category")
        return (str(error) if error else None), data.get("category")
