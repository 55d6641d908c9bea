"""
Queue and chunk performance statistics for the operator API.
"""

from typing import Any

from mailsync.features.sync_engine.domain.config import get_scheduler_config
from mailsync.features.sync_engine.repository.chunk_repository import ChunkRepository

BACKLOG_THRESHOLD = 50


def classify_queue_health(stats: dict[str, Any]) -> str:
    if (stats.get("stuck") or 0) > 0:
        return "degraded"
    if (stats.get("ready") or 0) > BACKLOG_THRESHOLD:
        return "backlog"
    if (stats.get("pending") or 0) > 0 and (stats.get("processing") or 0) == 0:
        return "no_workers"
    return "healthy"


def _as_float(value: Any) -> float | None:
    return round(float(value), 2) if value is not None else None


async def get_queue_stats() -> dict[str, Any]:
    config = get_scheduler_config()
    raw = await ChunkRepository.queue_stats(config.stuck_timeout_minutes)

    stats = {
        "total_chunks": raw.get("total_chunks") or 0,
        "pending": raw.get("pending") or 0,
        "processing": raw.get("processing") or 0,
        "completed": raw.get("completed") or 0,
        "failed": raw.get("failed") or 0,
        "ready": raw.get("ready") or 0,
        "waiting_retry": raw.get("waiting_retry") or 0,
        "stuck": raw.get("stuck") or 0,
        "active_tenants": raw.get("active_tenants") or 0,
        "active_workers": raw.get("active_workers") or 0,
        "avg_duration_ms_last_hour": _as_float(raw.get("avg_duration_ms_last_hour")),
        "oldest_pending_age_seconds": _as_float(raw.get("oldest_pending_age_seconds")),
        "jobs_by_status": raw.get("jobs_by_status") or {},
        "stuck_timeout_minutes": config.stuck_timeout_minutes,
    }
    stats["queue_health"] = classify_queue_health(stats)
    return stats


async def get_chunk_performance_stats(days: int = 7) -> dict[str, Any]:
    """Average duration, throughput, success rate and best chunk size over the window."""
    raw = await ChunkRepository.performance_stats(days)
    summary = raw.get("summary") or {}
    by_size = raw.get("by_chunk_size") or []

    completed = summary.get("completed") or 0
    failed = summary.get("failed") or 0
    finished = completed + failed

    optimal = by_size[0] if by_size else None
    return {
        "period_days": days,
        "total_chunks": summary.get("total_chunks") or 0,
        "completed": completed,
        "failed": failed,
        "success_rate": round(completed * 100.0 / finished, 2) if finished else None,
        "avg_duration_ms": _as_float(summary.get("avg_duration_ms")),
        "avg_emails_per_second": _as_float(summary.get("avg_emails_per_second")),
        "optimal_chunk_size": optimal["chunk_size"] if optimal else None,
        "by_chunk_size": [
            {
                "chunk_size": row["chunk_size"],
                "samples": row["samples"],
                "emails_per_second": _as_float(row.get("emails_per_second")),
            }
            for row in by_size
        ],
    }
