"""
Job decomposition: estimate -> contiguous list of chunk plans.
"""

import math

from mailsync.features.sync_engine.domain.models import (
    DEFAULT_PRIORITY_BY_KIND,
    MAX_PRIORITY,
    MIN_PRIORITY,
    PRIORITY_NORMAL,
    SYNC_KINDS,
    ChunkPlan,
)

DEFAULT_ESTIMATES = {
    "initial": 1000,
    "incremental": 50,
}
FALLBACK_ESTIMATE = 100


def default_estimate(sync_kind: str, estimated_count: int | None = None) -> int:
    """Return the estimate to plan with, applying the per-kind default and a floor of 1."""
    if estimated_count is None:
        estimated_count = DEFAULT_ESTIMATES.get(sync_kind, FALLBACK_ESTIMATE)
    return max(1, int(estimated_count))


def resolve_priority(sync_kind: str, priority: int | None = None) -> int:
    if sync_kind not in SYNC_KINDS:
        raise ValueError(f"Unknown sync kind: {sync_kind}")
    if priority is None:
        priority = DEFAULT_PRIORITY_BY_KIND.get(sync_kind, PRIORITY_NORMAL)
    return max(MIN_PRIORITY, min(int(priority), MAX_PRIORITY))


def plan_chunks(estimated_count: int, chunk_size: int) -> list[ChunkPlan]:
    """
    Split an estimate into chunks numbered 1..total_chunks.

    Every chunk is chunk_size except the last, which takes the remainder.
    Chunk priority equals its number so earlier slices sort first.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be positive")

    estimate = max(1, int(estimated_count))
    total_chunks = math.ceil(estimate / chunk_size)

    plans: list[ChunkPlan] = []
    remaining = estimate
    for chunk_number in range(1, total_chunks + 1):
        size = min(chunk_size, remaining)
        plans.append(
            ChunkPlan(
                chunk_number=chunk_number,
                total_chunks=total_chunks,
                chunk_size=size,
                priority=chunk_number,
                offset=estimate - remaining,
            )
        )
        remaining -= size

    return plans
