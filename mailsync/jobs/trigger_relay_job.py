"""
Trigger Relay Job - re-delivers worker triggers left in the outbox.

A notification stays in the Redis outbox until its HTTP delivery succeeds.
This job retries whatever is left, so a crash or a failed POST after a
commit does not leave a job waiting for the recovery sweep.

Usage:
    mailsync-worker trigger_relay
"""

import asyncio
from datetime import UTC, datetime

from mailsync.config import settings
from mailsync.features.sync_engine.services.invocation_trigger import trigger_outbox
from mailsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Entries younger than this may still be in their first delivery attempt
MIN_ENTRY_AGE_SECONDS = 10
RELAY_BATCH_SIZE = 500


class TriggerRelayMetrics:
    def __init__(self):
        self.reset()

    def reset(self):
        self.start_time = datetime.now(UTC)
        self.pending = 0
        self.delivered = 0
        self.failed = 0
        self.skipped = 0
        self.discarded = 0
        self.total_duration_seconds = 0.0

    def record_relay(self, result: dict):
        for key in ("pending", "delivered", "failed", "skipped", "discarded"):
            setattr(self, key, getattr(self, key) + result.get(key, 0))

    def finalize(self):
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job_run": "trigger_relay",
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "pending": self.pending,
            "delivered": self.delivered,
            "failed": self.failed,
            "skipped": self.skipped,
            "discarded": self.discarded,
        }


class TriggerRelayJob:
    def __init__(self, interval_seconds: int | None = None):
        self.interval_seconds = interval_seconds or settings.TRIGGER_RELAY_INTERVAL_SECONDS
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.job_metrics = TriggerRelayMetrics()

    async def run_once(self) -> dict:
        if self.is_running:
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            self.job_metrics.reset()

            result = await trigger_outbox.relay_pending(
                min_age_seconds=MIN_ENTRY_AGE_SECONDS, limit=RELAY_BATCH_SIZE
            )
            self.job_metrics.record_relay(result)

            self.job_metrics.finalize()
            self.last_run_time = datetime.now(UTC)
            return self.job_metrics.to_dict()
        finally:
            self.is_running = False

    def get_job_status(self) -> dict:
        return {
            "job_name": "trigger_relay",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "interval_seconds": self.interval_seconds,
            "last_run_metrics": self.job_metrics.to_dict() if self.last_run_time else None,
        }

    def health_check(self) -> dict:
        # A backlog that keeps failing means the worker endpoint is down
        failing = self.job_metrics.failed > 0 and self.job_metrics.delivered == 0
        return {
            "healthy": not failing,
            "service": "trigger_relay_job",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "last_failed": self.job_metrics.failed,
            "configuration": {
                "interval_seconds": self.interval_seconds,
                "min_entry_age_seconds": MIN_ENTRY_AGE_SECONDS,
            },
        }


trigger_relay_job = TriggerRelayJob()


async def start_trigger_relay_scheduler():
    logger.info("Starting trigger relay scheduler", interval_seconds=trigger_relay_job.interval_seconds)

    while True:
        try:
            await trigger_relay_job.run_once()
            await asyncio.sleep(trigger_relay_job.interval_seconds)

        except asyncio.CancelledError:
            logger.info("Trigger relay scheduler cancelled")
            break
        except Exception as e:
            logger.error("Error in trigger relay scheduler", error=str(e), error_type=type(e).__name__)
            await asyncio.sleep(60)
