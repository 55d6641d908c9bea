"""
Persistence for per-tenant protection state (rate limiter + circuit breaker).

Every mutation is a single UPDATE whose WHERE/CASE clauses carry the
decision, so concurrent callers for the same tenant never read-then-write.
"""

from mailsync.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from mailsync.features.sync_engine.domain.config import SchedulerConfig
from mailsync.features.sync_engine.domain.models import ProtectionState
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# A failure that opens (or re-opens) the circuit
_TRIPS_CIRCUIT = (
    "(circuit_state = 'half_open' "
    "OR (circuit_state = 'closed' AND failure_count + 1 >= failure_threshold))"
)


class ProtectionRepositoryError(DatabaseError):
    """More specific exception for protection state failures."""


class ProtectionRepository:
    STATE_SELECT_COLUMNS = """
        tenant_id, operation, requests_per_minute, requests_per_hour, requests_per_day,
        minute_count, hour_count, day_count, minute_window_start, hour_window_start,
        day_window_start, throttled_until, throttle_reason, circuit_state,
        failure_count, success_count, failure_threshold, success_threshold,
        timeout_seconds, opened_at, next_attempt_allowed_at, total_requests,
        total_failures, total_successes
    """

    @classmethod
    def _row_to_state(cls, row: dict | None) -> ProtectionState | None:
        if not row:
            return None

        return ProtectionState(
            tenant_id=str(row["tenant_id"]),
            operation=row["operation"],
            requests_per_minute=row["requests_per_minute"],
            requests_per_hour=row["requests_per_hour"],
            requests_per_day=row["requests_per_day"],
            minute_count=row["minute_count"],
            hour_count=row["hour_count"],
            day_count=row["day_count"],
            minute_window_start=row["minute_window_start"],
            hour_window_start=row["hour_window_start"],
            day_window_start=row["day_window_start"],
            throttled_until=row.get("throttled_until"),
            throttle_reason=row.get("throttle_reason"),
            circuit_state=row["circuit_state"],
            failure_count=row["failure_count"],
            success_count=row["success_count"],
            failure_threshold=row["failure_threshold"],
            success_threshold=row["success_threshold"],
            timeout_seconds=row["timeout_seconds"],
            opened_at=row.get("opened_at"),
            next_attempt_allowed_at=row.get("next_attempt_allowed_at"),
            total_requests=row.get("total_requests") or 0,
            total_failures=row.get("total_failures") or 0,
            total_successes=row.get("total_successes") or 0,
        )

    @classmethod
    async def ensure_state(cls, tenant_id: str, operation: str, config: SchedulerConfig) -> None:
        """Create the row lazily with the configured defaults."""
        query = """
            INSERT INTO protection_state (
                tenant_id, operation, requests_per_minute, requests_per_hour,
                requests_per_day, failure_threshold, success_threshold, timeout_seconds
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (tenant_id, operation) DO NOTHING
        """
        await execute_query(
            query,
            (
                tenant_id,
                operation,
                config.rate_limit_per_minute,
                config.rate_limit_per_hour,
                config.rate_limit_per_day,
                config.circuit_failure_threshold,
                config.circuit_success_threshold,
                config.circuit_timeout_seconds,
            ),
        )

    @classmethod
    async def get_state(cls, tenant_id: str, operation: str) -> ProtectionState | None:
        query = f"""
            SELECT {cls.STATE_SELECT_COLUMNS}
            FROM protection_state
            WHERE tenant_id = %s AND operation = %s
        """
        return cls._row_to_state(await fetch_one(query, (tenant_id, operation)))

    @classmethod
    async def list_for_tenant(cls, tenant_id: str) -> list[ProtectionState]:
        query = f"""
            SELECT {cls.STATE_SELECT_COLUMNS}
            FROM protection_state
            WHERE tenant_id = %s
            ORDER BY operation
        """
        rows = await fetch_all(query, (tenant_id,))
        return [cls._row_to_state(row) for row in rows]

    @classmethod
    async def list_open_circuits(cls) -> list[ProtectionState]:
        query = f"""
            SELECT {cls.STATE_SELECT_COLUMNS}
            FROM protection_state
            WHERE circuit_state = 'open'
            ORDER BY opened_at DESC
        """
        rows = await fetch_all(query)
        return [cls._row_to_state(row) for row in rows]

    # =================================================================
    # RATE LIMITER
    # =================================================================

    @classmethod
    async def try_acquire(cls, tenant_id: str, operation: str) -> ProtectionState | None:
        """
        Count one request if every window has room and the tenant is not throttled.

        Windows that have expired roll over in the same statement. Returns
        the updated state, or None when the request is refused.
        """
        query = f"""
            UPDATE protection_state
            SET minute_count = CASE WHEN minute_window_start <= NOW() - INTERVAL '1 minute'
                                    THEN 1 ELSE minute_count + 1 END,
                minute_window_start = CASE WHEN minute_window_start <= NOW() - INTERVAL '1 minute'
                                           THEN NOW() ELSE minute_window_start END,
                hour_count = CASE WHEN hour_window_start <= NOW() - INTERVAL '1 hour'
                                  THEN 1 ELSE hour_count + 1 END,
                hour_window_start = CASE WHEN hour_window_start <= NOW() - INTERVAL '1 hour'
                                         THEN NOW() ELSE hour_window_start END,
                day_count = CASE WHEN day_window_start <= NOW() - INTERVAL '1 day'
                                 THEN 1 ELSE day_count + 1 END,
                day_window_start = CASE WHEN day_window_start <= NOW() - INTERVAL '1 day'
                                        THEN NOW() ELSE day_window_start END,
                total_requests = total_requests + 1,
                last_request_at = NOW(),
                updated_at = NOW()
            WHERE tenant_id = %s
              AND operation = %s
              AND (throttled_until IS NULL OR throttled_until <= NOW())
              AND (CASE WHEN minute_window_start <= NOW() - INTERVAL '1 minute'
                        THEN 0 ELSE minute_count END) < requests_per_minute
              AND (CASE WHEN hour_window_start <= NOW() - INTERVAL '1 hour'
                        THEN 0 ELSE hour_count END) < requests_per_hour
              AND (CASE WHEN day_window_start <= NOW() - INTERVAL '1 day'
                        THEN 0 ELSE day_count END) < requests_per_day
            RETURNING {cls.STATE_SELECT_COLUMNS}
        """
        return cls._row_to_state(await fetch_one(query, (tenant_id, operation)))

    @classmethod
    async def record_throttle_event(cls, tenant_id: str, operation: str) -> None:
        query = """
            UPDATE protection_state
            SET total_throttle_events = total_throttle_events + 1,
                updated_at = NOW()
            WHERE tenant_id = %s AND operation = %s
        """
        await execute_query(query, (tenant_id, operation))

    # =================================================================
    # CIRCUIT BREAKER
    # =================================================================

    @classmethod
    async def try_half_open(cls, tenant_id: str, operation: str) -> bool:
        """Move an open circuit whose cooldown elapsed to half_open (one trial call allowed)."""
        query = """
            UPDATE protection_state
            SET circuit_state = 'half_open',
                success_count = 0,
                updated_at = NOW()
            WHERE tenant_id = %s
              AND operation = %s
              AND circuit_state = 'open'
              AND next_attempt_allowed_at <= NOW()
        """
        moved = await execute_query(query, (tenant_id, operation))
        if moved:
            logger.info("Circuit half-open", tenant_id=tenant_id, operation=operation)
        return moved > 0

    @classmethod
    async def record_success(cls, tenant_id: str, operation: str) -> ProtectionState | None:
        """
        Success: clears throttling, resets the failure streak, and counts
        toward closing a half_open circuit.
        """
        closes = "(circuit_state = 'half_open' AND success_count + 1 >= success_threshold)"
        query = f"""
            UPDATE protection_state
            SET circuit_state = CASE WHEN {closes} THEN 'closed' ELSE circuit_state END,
                success_count = CASE WHEN {closes} THEN 0
                                     WHEN circuit_state = 'half_open' THEN success_count + 1
                                     ELSE 0 END,
                failure_count = 0,
                opened_at = CASE WHEN {closes} THEN NULL ELSE opened_at END,
                next_attempt_allowed_at = CASE WHEN {closes} THEN NULL ELSE next_attempt_allowed_at END,
                throttled_until = NULL,
                throttle_reason = NULL,
                total_successes = total_successes + 1,
                last_success_at = NOW(),
                updated_at = NOW()
            WHERE tenant_id = %s AND operation = %s
            RETURNING {cls.STATE_SELECT_COLUMNS}
        """
        return cls._row_to_state(await fetch_one(query, (tenant_id, operation)))

    @classmethod
    async def record_failure(
        cls,
        tenant_id: str,
        operation: str,
        *,
        counts_against_circuit: bool,
        throttle_seconds: int | None = None,
    ) -> ProtectionState | None:
        """
        Failure: extends throttling when the upstream rate-limited us and,
        for upstream-health categories, advances the circuit breaker.
        """
        if counts_against_circuit:
            circuit_sql = f"""
                circuit_state = CASE WHEN {_TRIPS_CIRCUIT} THEN 'open' ELSE circuit_state END,
                opened_at = CASE WHEN {_TRIPS_CIRCUIT} THEN NOW() ELSE opened_at END,
                next_attempt_allowed_at = CASE WHEN {_TRIPS_CIRCUIT}
                                               THEN NOW() + (timeout_seconds * INTERVAL '1 second')
                                               ELSE next_attempt_allowed_at END,
                failure_count = failure_count + 1,
                success_count = 0,
            """
        else:
            circuit_sql = ""

        query = f"""
            UPDATE protection_state
            SET {circuit_sql}
                throttled_until = CASE WHEN %s::int IS NULL THEN throttled_until
                                       ELSE GREATEST(COALESCE(throttled_until, NOW()),
                                                     NOW() + (%s::int * INTERVAL '1 second')) END,
                throttle_reason = CASE WHEN %s::int IS NULL THEN throttle_reason
                                       ELSE 'upstream_rate_limit' END,
                total_throttle_events = total_throttle_events + CASE WHEN %s::int IS NULL THEN 0 ELSE 1 END,
                total_failures = total_failures + 1,
                last_failure_at = NOW(),
                updated_at = NOW()
            WHERE tenant_id = %s AND operation = %s
            RETURNING {cls.STATE_SELECT_COLUMNS}
        """
        params = (
            throttle_seconds,
            throttle_seconds,
            throttle_seconds,
            throttle_seconds,
            tenant_id,
            operation,
        )
        state = cls._row_to_state(await fetch_one(query, params))
        if state and state.circuit_state == "open" and counts_against_circuit:
            logger.warning(
                "Circuit open",
                tenant_id=tenant_id,
                operation=operation,
                failure_count=state.failure_count,
                next_attempt_allowed_at=state.next_attempt_allowed_at,
            )
        return state
