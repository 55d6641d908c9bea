"""
Retry and backoff policy for failed chunks.

Pure functions: the caller supplies the attempt count, the recent failure
count for the category within the tenant and the active SchedulerConfig.
"""

import random
from collections.abc import Callable

from mailsync.features.sync_engine.domain.config import SchedulerConfig
from mailsync.features.sync_engine.domain.models import RetryDecision
from mailsync.features.sync_engine.policy.error_classifier import (
    PERMANENT_CATEGORIES,
    RETRY_ONCE_CATEGORIES,
    TRANSIENT_CATEGORIES,
)

MIN_BACKOFF_MS = 1000


def base_backoff_ms(category: str, attempt: int) -> int:
    """Delay before jitter, in milliseconds, for the given 1-based attempt."""
    n = max(1, attempt)
    step = min(n - 1, 2)

    if category == "rate_limit":
        return 5000 * (3**step)
    if category in ("network", "temporary"):
        return 2000 * (2**step)
    if category == "timeout":
        return 3000 * min(n, 3)
    if category == "auth":
        return 2000 if n == 1 else 5000
    return 1000 * (2**step)


def compute_backoff(
    category: str,
    attempt: int,
    config: SchedulerConfig,
    rng: Callable[[], float] = random.random,
    degraded: bool = False,
) -> float:
    """
    Return the retry delay in seconds: base delay plus jitter, capped and floored.

    A degraded category multiplies the base delay by degraded_backoff_multiplier.
    """
    base_ms = base_backoff_ms(category, attempt)
    if degraded:
        base_ms *= config.degraded_backoff_multiplier
    delay_ms = base_ms + rng() * config.backoff_jitter_ms
    delay_ms = min(delay_ms, config.backoff_max_seconds * 1000)
    delay_ms = max(delay_ms, MIN_BACKOFF_MS)
    return delay_ms / 1000.0


def decide_retry(
    category: str,
    attempts: int,
    max_attempts: int,
    config: SchedulerConfig,
    recent_failures: int = 0,
    rng: Callable[[], float] = random.random,
) -> RetryDecision:
    """
    Decide whether a chunk that just failed on its `attempts`-th try goes back to pending.
    """

    def _no(reason: str) -> RetryDecision:
        return RetryDecision(
            category=category,
            retry=False,
            delay_seconds=None,
            reason=reason,
            recent_failures=recent_failures,
        )

    if attempts >= max_attempts:
        return _no("max_attempts_exhausted")

    if category in PERMANENT_CATEGORIES:
        return _no("non_retryable_category")

    if category in RETRY_ONCE_CATEGORIES and attempts >= 2:
        return _no("retry_limit_for_category")

    if category not in TRANSIENT_CATEGORIES and category not in RETRY_ONCE_CATEGORIES:
        return _no("non_retryable_category")

    # A degraded category still retries up to max_attempts, only later
    degraded = recent_failures > config.recent_failure_threshold

    return RetryDecision(
        category=category,
        retry=True,
        delay_seconds=compute_backoff(category, attempts, config, rng, degraded=degraded),
        reason="retry_scheduled_degraded" if degraded else "retry_scheduled",
        recent_failures=recent_failures,
    )
