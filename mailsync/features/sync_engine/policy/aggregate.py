"""
Parent job status as a projection of its chunks.
"""

from mailsync.features.sync_engine.domain.models import ChunkCounts


def derive_job_status(counts: ChunkCounts) -> str:
    """
    Project chunk counts onto a SyncJob status.

    completed  every chunk completed
    failed     nothing pending or processing, at least one failed
    processing something is processing, or progress has been made
    pending    nothing has started yet
    """
    if counts.total > 0 and counts.completed == counts.total:
        return "completed"

    if counts.pending == 0 and counts.processing == 0 and counts.failed > 0:
        return "failed"

    if counts.processing > 0 or counts.completed > 0 or counts.failed > 0:
        return "processing"

    return "pending"


def progress_percentage(counts: ChunkCounts) -> float:
    if counts.total <= 0:
        return 0.0
    return round(counts.completed * 100.0 / counts.total, 2)
