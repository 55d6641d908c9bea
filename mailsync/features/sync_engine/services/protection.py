"""
Protection layer: per-tenant rate limiter and circuit breaker in front of
the work executor.

Usage:
    decision = await protection_layer.before_call(tenant_id, config=config)
    if not decision.allowed:
        ...  # come back after decision.retry_after_seconds
    ...
    await protection_layer.after_call(tenant_id, success=False, category="timeout", config=config)

Design:
    - State lives in protection_state, one row per (tenant, operation),
      created lazily.
    - The circuit is consulted before the rate limiter so a refused call
      never consumes quota.
    - Only upstream-health failures count against the circuit.
"""

import math
from datetime import UTC, datetime, timedelta
from typing import Any

from mailsync.features.sync_engine.domain.config import SchedulerConfig, get_scheduler_config
from mailsync.features.sync_engine.domain.models import ProtectionDecision, ProtectionState
from mailsync.features.sync_engine.policy.error_classifier import counts_against_circuit
from mailsync.features.sync_engine.repository.protection_repository import ProtectionRepository
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

EXECUTOR_OPERATION = "execute_chunk"

_WINDOWS = (
    ("minute_window_start", "minute_count", "requests_per_minute", timedelta(minutes=1)),
    ("hour_window_start", "hour_count", "requests_per_hour", timedelta(hours=1)),
    ("day_window_start", "day_count", "requests_per_day", timedelta(days=1)),
)


def _seconds_until(moment: datetime, now: datetime) -> int:
    return max(1, math.ceil((moment - now).total_seconds()))


def compute_retry_after(state: ProtectionState, now: datetime | None = None) -> tuple[int, str]:
    """
    How long a refused caller should wait, and why.

    Returns (seconds, reason) where reason is "throttled" or "rate_limited".
    """
    now = now or datetime.now(UTC)

    if state.throttled_until and state.throttled_until > now:
        return _seconds_until(state.throttled_until, now), "throttled"

    waits = []
    for start_attr, count_attr, limit_attr, span in _WINDOWS:
        window_end = getattr(state, start_attr) + span
        if window_end > now and getattr(state, count_attr) >= getattr(state, limit_attr):
            waits.append(_seconds_until(window_end, now))

    return (max(waits) if waits else 1), "rate_limited"


class RateLimiter:
    """Sliding-window counters per tenant, checked and incremented atomically."""

    async def check_and_consume(
        self, tenant_id: str, operation: str = EXECUTOR_OPERATION
    ) -> tuple[bool, dict[str, Any]]:
        """
        Count one call if the tenant has room.

        Returns:
            (allowed, info) where info carries counts or the retry-after hint
        """
        state = await ProtectionRepository.try_acquire(tenant_id, operation)
        if state:
            return True, self._create_info_dict(state, retry_after=0, reason="allowed")

        current = await ProtectionRepository.get_state(tenant_id, operation)
        if not current:
            # Row vanished (tenant deleted); nothing to limit against
            return True, {"reason": "allowed", "retry_after_seconds": 0}

        retry_after, reason = compute_retry_after(current)
        await ProtectionRepository.record_throttle_event(tenant_id, operation)

        logger.warning(
            "Rate limit refused call",
            tenant_id=tenant_id,
            operation=operation,
            reason=reason,
            retry_after_seconds=retry_after,
            minute_count=current.minute_count,
            requests_per_minute=current.requests_per_minute,
        )
        return False, self._create_info_dict(current, retry_after=retry_after, reason=reason)

    def _create_info_dict(self, state: ProtectionState, retry_after: int, reason: str) -> dict[str, Any]:
        return {
            "reason": reason,
            "retry_after_seconds": retry_after,
            "minute_count": state.minute_count,
            "hour_count": state.hour_count,
            "day_count": state.day_count,
            "requests_per_minute": state.requests_per_minute,
            "requests_per_hour": state.requests_per_hour,
            "requests_per_day": state.requests_per_day,
            "throttled_until": state.throttled_until.isoformat() if state.throttled_until else None,
        }


class CircuitBreaker:
    """closed -> open after N consecutive failures -> half_open after cooldown -> closed after M successes."""

    async def allow(
        self, tenant_id: str, operation: str = EXECUTOR_OPERATION
    ) -> tuple[bool, dict[str, Any]]:
        state = await ProtectionRepository.get_state(tenant_id, operation)
        if not state or state.circuit_state != "open":
            return True, {"circuit_state": state.circuit_state if state else "closed", "retry_after_seconds": 0}

        now = datetime.now(UTC)
        if state.next_attempt_allowed_at and state.next_attempt_allowed_at > now:
            retry_after = _seconds_until(state.next_attempt_allowed_at, now)
            logger.info(
                "Circuit open, refusing call",
                tenant_id=tenant_id,
                operation=operation,
                retry_after_seconds=retry_after,
            )
            return False, {"circuit_state": "open", "retry_after_seconds": retry_after}

        # Cooldown elapsed: let a trial call through
        await ProtectionRepository.try_half_open(tenant_id, operation)
        return True, {"circuit_state": "half_open", "retry_after_seconds": 0}

    async def record_success(self, tenant_id: str, operation: str = EXECUTOR_OPERATION) -> ProtectionState | None:
        return await ProtectionRepository.record_success(tenant_id, operation)

    async def record_failure(
        self,
        tenant_id: str,
        category: str,
        operation: str = EXECUTOR_OPERATION,
        throttle_seconds: int | None = None,
    ) -> ProtectionState | None:
        return await ProtectionRepository.record_failure(
            tenant_id,
            operation,
            counts_against_circuit=counts_against_circuit(category),
            throttle_seconds=throttle_seconds,
        )


class ProtectionLayer:
    def __init__(self, rate_limiter: RateLimiter | None = None, circuit_breaker: CircuitBreaker | None = None):
        self.rate_limiter = rate_limiter or RateLimiter()
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

    async def before_call(
        self,
        tenant_id: str,
        operation: str = EXECUTOR_OPERATION,
        config: SchedulerConfig | None = None,
    ) -> ProtectionDecision:
        config = config or get_scheduler_config().for_tenant(tenant_id)
        await ProtectionRepository.ensure_state(tenant_id, operation, config)

        allowed, info = await self.circuit_breaker.allow(tenant_id, operation)
        if not allowed:
            return ProtectionDecision(
                allowed=False,
                reason="circuit_open",
                retry_after_seconds=info["retry_after_seconds"],
                circuit_state="open",
            )

        allowed, limit_info = await self.rate_limiter.check_and_consume(tenant_id, operation)
        if not allowed:
            return ProtectionDecision(
                allowed=False,
                reason=limit_info["reason"],
                retry_after_seconds=limit_info["retry_after_seconds"],
                circuit_state=info["circuit_state"],
            )

        return ProtectionDecision(allowed=True, reason="allowed", circuit_state=info["circuit_state"])

    async def after_call(
        self,
        tenant_id: str,
        *,
        success: bool,
        category: str | None = None,
        retry_after_seconds: int | None = None,
        operation: str = EXECUTOR_OPERATION,
        config: SchedulerConfig | None = None,
    ) -> ProtectionState | None:
        if success:
            return await self.circuit_breaker.record_success(tenant_id, operation)

        config = config or get_scheduler_config().for_tenant(tenant_id)
        category = category or "unknown"
        throttle_seconds = None
        if category == "rate_limit":
            throttle_seconds = max(config.rate_limit_backoff_seconds, retry_after_seconds or 0)

        return await self.circuit_breaker.record_failure(
            tenant_id, category, operation=operation, throttle_seconds=throttle_seconds
        )

    async def get_protection_state(self, tenant_id: str) -> list[dict[str, Any]]:
        states = await ProtectionRepository.list_for_tenant(tenant_id)
        return [state.to_dict() for state in states]

    async def list_open_circuits(self) -> list[dict[str, Any]]:
        states = await ProtectionRepository.list_open_circuits()
        return [state.to_dict() for state in states]


protection_layer = ProtectionLayer()
