"""
Recovery Sweep Job - periodic reclaim of abandoned chunk work.

Runs every RECOVERY_SWEEP_INTERVAL_MINUTES to:
1. Reset chunks stuck in processing past the stuck timeout
2. Fail stuck chunks that have no attempts left
3. Recompute parents left in processing with nothing running
4. Re-notify the trigger for jobs with ready work and no worker

The same sweep also runs opportunistically after every chunk outcome; this
job is the safety net when no outcomes are arriving.

Usage:
    mailsync-worker recovery_sweep
"""

import asyncio
from datetime import UTC, datetime, timedelta

from mailsync.config import settings
from mailsync.features.sync_engine.services.recovery_sweep import run_recovery_sweep
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RecoverySweepJobError(Exception):
    """Custom exception for recovery sweep job operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class RecoverySweepMetrics:
    """Metrics tracking for recovery sweep runs."""

    def __init__(self):
        self.reset()

    def reset(self):
        """Reset all metrics for new job run."""
        self.start_time = datetime.now(UTC)
        self.chunks_reset = 0
        self.chunks_failed = 0
        self.jobs_recomputed = 0
        self.jobs_failed = 0
        self.jobs_notified = 0
        self.total_duration_seconds = 0.0

    def record_summary(self, summary: dict):
        self.chunks_reset += summary.get("chunks_reset", 0)
        self.chunks_failed += summary.get("chunks_failed", 0)
        self.jobs_recomputed += summary.get("jobs_recomputed", 0)
        self.jobs_failed += summary.get("jobs_failed", 0)
        self.jobs_notified += summary.get("jobs_notified", 0)

    def finalize(self):
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job_run": "recovery_sweep",
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "chunks_reset": self.chunks_reset,
            "chunks_failed": self.chunks_failed,
            "jobs_recomputed": self.jobs_recomputed,
            "jobs_failed": self.jobs_failed,
            "jobs_notified": self.jobs_notified,
        }


class RecoverySweepJob:
    def __init__(self, interval_minutes: int | None = None):
        self.interval_minutes = interval_minutes or settings.RECOVERY_SWEEP_INTERVAL_MINUTES
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.job_metrics = RecoverySweepMetrics()

    async def run_once(self) -> dict:
        """
        Run a single sweep.

        Raises:
            RecoverySweepJobError: If the sweep fails due to system errors
        """
        if self.is_running:
            logger.warning("Recovery sweep already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            self.job_metrics.reset()

            summary = await run_recovery_sweep(notify=True)
            self.job_metrics.record_summary(summary)

            self.job_metrics.finalize()
            self.last_run_time = datetime.now(UTC)
            return self.job_metrics.to_dict()

        except Exception as e:
            logger.error("Recovery sweep job failed", error=str(e), error_type=type(e).__name__)
            self.job_metrics.finalize()
            raise RecoverySweepJobError(f"Recovery sweep job failed: {e}", operation="run_once") from e

        finally:
            self.is_running = False

    def get_job_status(self) -> dict:
        return {
            "job_name": "recovery_sweep",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "interval_minutes": self.interval_minutes,
            "last_run_metrics": self.job_metrics.to_dict() if self.last_run_time else None,
        }

    def health_check(self) -> dict:
        """Unhealthy when the sweep has not run in twice its interval."""
        now = datetime.now(UTC)
        overdue_threshold = timedelta(minutes=self.interval_minutes * 2)
        is_overdue = self.last_run_time is not None and (now - self.last_run_time) > overdue_threshold

        health_status = {
            "healthy": not is_overdue,
            "service": "recovery_sweep_job",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "is_overdue": is_overdue,
            "configuration": {"interval_minutes": self.interval_minutes},
        }
        if is_overdue:
            health_status["warning"] = (
                f"Job overdue by {(now - self.last_run_time).total_seconds() / 60:.1f} minutes"
            )
        return health_status


# Singleton instance for application use
recovery_sweep_job = RecoverySweepJob()


async def run_recovery_sweep_job() -> dict:
    return await recovery_sweep_job.run_once()


async def start_recovery_sweep_scheduler():
    """Run the sweep forever at the configured interval."""
    logger.info("Starting recovery sweep scheduler", interval_minutes=recovery_sweep_job.interval_minutes)

    while True:
        try:
            metrics = await run_recovery_sweep_job()
            if not metrics.get("skipped", False):
                logger.info("Recovery sweep cycle completed", **metrics)

            await asyncio.sleep(recovery_sweep_job.interval_minutes * 60)

        except asyncio.CancelledError:
            logger.info("Recovery sweep scheduler cancelled")
            break
        except Exception as e:
            logger.error("Error in recovery sweep scheduler", error=str(e), error_type=type(e).__name__)
            # Wait a bit before retrying to avoid tight error loops
            await asyncio.sleep(60)
