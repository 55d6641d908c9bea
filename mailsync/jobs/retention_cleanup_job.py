"""
Retention Cleanup Job - automatic data retention enforcement.

This job runs daily (configured hour) to:
1. Delete completed and cancelled sync jobs older than 30 days
2. Delete failed sync jobs older than 90 days
3. Delete audit entries older than 365 days

Chunks go with their parent (ON DELETE CASCADE). Dead-letter records are
never deleted here; they are the durable record operators review.

Schedule:
- Production: Daily at DATA_CLEANUP_SCHEDULE_HOUR (UTC)
- Development: Manual trigger only

Usage:
    mailsync-worker retention_cleanup
"""

import asyncio
from datetime import UTC, datetime, timedelta

from mailsync.config import settings
from mailsync.features.sync_engine.repository.sync_job_repository import SyncJobRepository
from mailsync.infrastructure.audit import audit_logger
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RetentionCleanupMetrics:
    def __init__(self):
        self.reset()

    def reset(self):
        self.start_time = datetime.now(UTC)
        self.completed_jobs_deleted = 0
        self.failed_jobs_deleted = 0
        self.audit_logs_deleted = 0
        self.errors: list[str] = []
        self.total_duration_seconds = 0.0

    def record_jobs_deleted(self, result: dict):
        self.completed_jobs_deleted += result.get("completed_jobs_deleted", 0)
        self.failed_jobs_deleted += result.get("failed_jobs_deleted", 0)

    def record_audit_logs_deleted(self, count: int):
        self.audit_logs_deleted += count

    def record_error(self, message: str):
        self.errors.append(message)
        logger.error(message)

    def finalize(self):
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job_run": "retention_cleanup",
            "success": not self.errors,
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "completed_jobs_deleted": self.completed_jobs_deleted,
            "failed_jobs_deleted": self.failed_jobs_deleted,
            "audit_logs_deleted": self.audit_logs_deleted,
            "errors": list(self.errors),
        }


class RetentionCleanupJob:
    """
    Background job for retention enforcement. Each step is independent;
    a failure in one is recorded and the others still run.
    """

    def __init__(self):
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.job_metrics = RetentionCleanupMetrics()

    async def run_once(self) -> dict:
        if self.is_running:
            logger.warning("Cleanup job already running, skipping")
            return {"skipped": True, "reason": "already_running"}

        self.is_running = True
        self.job_metrics.reset()
        retention = settings.get_data_retention_config()

        logger.info(
            "Starting retention cleanup job",
            completed_days=retention["completed_days"],
            failed_days=retention["failed_days"],
            audit_log_days=retention["audit_log_days"],
        )

        try:
            # ================================================================
            # 1-2. Sync jobs (chunks cascade)
            # ================================================================
            try:
                result = await SyncJobRepository.delete_expired(
                    retention["completed_days"], retention["failed_days"]
                )
                self.job_metrics.record_jobs_deleted(result)
            except Exception as e:
                self.job_metrics.record_error(f"Failed to delete expired sync jobs: {e}")

            # ================================================================
            # 3. Audit trail
            # ================================================================
            try:
                count = await audit_logger.delete_older_than(retention["audit_log_days"])
                self.job_metrics.record_audit_logs_deleted(count)
            except Exception as e:
                self.job_metrics.record_error(f"Failed to delete old audit logs: {e}")

        finally:
            self.is_running = False

        self.job_metrics.finalize()
        self.last_run_time = datetime.now(UTC)
        metrics = self.job_metrics.to_dict()
        logger.info("Retention cleanup job completed", **metrics)
        return metrics

    def get_job_status(self) -> dict:
        return {
            "job_name": "retention_cleanup",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "retention": settings.get_data_retention_config(),
            "last_run_metrics": self.job_metrics.to_dict() if self.last_run_time else None,
        }

    def health_check(self) -> dict:
        now = datetime.now(UTC)
        is_overdue = self.last_run_time is not None and (now - self.last_run_time) > timedelta(days=2)
        return {
            "healthy": not is_overdue and not self.job_metrics.errors,
            "service": "retention_cleanup_job",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "is_overdue": is_overdue,
            "last_errors": list(self.job_metrics.errors),
        }


# Singleton instance for manual triggers
retention_cleanup_job = RetentionCleanupJob()


def seconds_until_hour(hour: int, now: datetime | None = None) -> float:
    """Seconds from now until the next occurrence of hour:00 UTC."""
    now = now or datetime.now(UTC)
    next_run = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if now >= next_run:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


async def start_retention_cleanup_scheduler():
    """
    Run the cleanup daily at the configured hour.

    Disabled in development so local data is not deleted.
    """
    retention_config = settings.get_data_retention_config()

    if not retention_config["cleanup_enabled"]:
        logger.info("Retention cleanup scheduler DISABLED", environment=settings.environment)
        return

    schedule_hour = retention_config["cleanup_schedule_hour"]
    logger.info("Retention cleanup scheduler STARTED", schedule_hour=schedule_hour)

    while True:
        try:
            sleep_seconds = seconds_until_hour(schedule_hour)
            logger.info("Retention cleanup scheduled", sleep_seconds=sleep_seconds)
            await asyncio.sleep(sleep_seconds)

            await retention_cleanup_job.run_once()

        except asyncio.CancelledError:
            logger.info("Retention cleanup scheduler cancelled")
            break
        except Exception as e:
            logger.error("Error in cleanup scheduler, will retry", error=str(e))
            # Sleep 1 hour before retrying on error
            await asyncio.sleep(3600)
