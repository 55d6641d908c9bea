"""
Tests for the periodic background jobs.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from mailsync.features.sync_engine.repository.sync_job_repository import SyncJobRepository
from mailsync.features.sync_engine.services.invocation_trigger import trigger_outbox
from mailsync.infrastructure.audit.audit_logger import AuditLogger
from mailsync.jobs import recovery_sweep_job as sweep_module
from mailsync.jobs.recovery_sweep_job import RecoverySweepJob, RecoverySweepJobError
from mailsync.jobs.retention_cleanup_job import RetentionCleanupJob, seconds_until_hour
from mailsync.jobs.trigger_relay_job import MIN_ENTRY_AGE_SECONDS, TriggerRelayJob


class TestRecoverySweepJob:
    @pytest.mark.asyncio
    async def test_run_once_records_summary(self, monkeypatch):
        sweep = AsyncMock(
            return_value={
                "chunks_reset": 2,
                "chunks_failed": 1,
                "jobs_recomputed": 1,
                "jobs_failed": 0,
                "jobs_notified": 3,
            }
        )
        monkeypatch.setattr(sweep_module, "run_recovery_sweep", sweep)
        job = RecoverySweepJob(interval_minutes=5)

        metrics = await job.run_once()

        sweep.assert_awaited_once_with(notify=True)
        assert metrics["chunks_reset"] == 2
        assert metrics["jobs_notified"] == 3
        assert job.get_job_status()["last_run_metrics"]["chunks_failed"] == 1
        assert job.health_check()["healthy"] is True

    @pytest.mark.asyncio
    async def test_run_once_wraps_failures(self, monkeypatch):
        monkeypatch.setattr(sweep_module, "run_recovery_sweep", AsyncMock(side_effect=RuntimeError("db down")))
        job = RecoverySweepJob(interval_minutes=5)

        with pytest.raises(RecoverySweepJobError) as exc_info:
            await job.run_once()

        assert exc_info.value.operation == "run_once"
        assert job.is_running is False

    @pytest.mark.asyncio
    async def test_skips_while_running(self):
        job = RecoverySweepJob(interval_minutes=5)
        job.is_running = True

        assert await job.run_once() == {"skipped": True, "reason": "already_running"}

    def test_overdue_is_unhealthy(self):
        job = RecoverySweepJob(interval_minutes=5)
        job.last_run_time = datetime.now(UTC) - timedelta(minutes=11)

        health = job.health_check()

        assert health["healthy"] is False
        assert "overdue" in health["warning"]


class TestRetentionCleanupJob:
    @pytest.mark.asyncio
    async def test_deletes_jobs_and_audit_rows(self, monkeypatch):
        delete_expired = AsyncMock(return_value={"completed_jobs_deleted": 7, "failed_jobs_deleted": 2})
        delete_audit = AsyncMock(return_value=40)
        monkeypatch.setattr(SyncJobRepository, "delete_expired", delete_expired)
        monkeypatch.setattr(AuditLogger, "delete_older_than", staticmethod(delete_audit))

        metrics = await RetentionCleanupJob().run_once()

        delete_expired.assert_awaited_once_with(30, 90)
        delete_audit.assert_awaited_once_with(365)
        assert metrics["success"] is True
        assert metrics["completed_jobs_deleted"] == 7
        assert metrics["failed_jobs_deleted"] == 2
        assert metrics["audit_logs_deleted"] == 40

    @pytest.mark.asyncio
    async def test_one_failing_step_does_not_stop_the_other(self, monkeypatch):
        monkeypatch.setattr(SyncJobRepository, "delete_expired", AsyncMock(side_effect=RuntimeError("locked")))
        monkeypatch.setattr(AuditLogger, "delete_older_than", staticmethod(AsyncMock(return_value=3)))
        job = RetentionCleanupJob()

        metrics = await job.run_once()

        assert metrics["success"] is False
        assert metrics["audit_logs_deleted"] == 3
        assert "locked" in metrics["errors"][0]
        assert job.health_check()["healthy"] is False


class TestTriggerRelayJob:
    @pytest.mark.asyncio
    async def test_relays_outbox(self, monkeypatch):
        relay = AsyncMock(return_value={"pending": 3, "delivered": 2, "failed": 1, "skipped": 0, "discarded": 0})
        monkeypatch.setattr(trigger_outbox, "relay_pending", relay)
        job = TriggerRelayJob(interval_seconds=30)

        metrics = await job.run_once()

        assert relay.await_args.kwargs["min_age_seconds"] == MIN_ENTRY_AGE_SECONDS
        assert metrics["delivered"] == 2
        assert job.health_check()["healthy"] is True

    @pytest.mark.asyncio
    async def test_all_failing_is_unhealthy(self, monkeypatch):
        relay = AsyncMock(return_value={"pending": 2, "delivered": 0, "failed": 2, "skipped": 0, "discarded": 0})
        monkeypatch.setattr(trigger_outbox, "relay_pending", relay)
        job = TriggerRelayJob(interval_seconds=30)

        await job.run_once()

        assert job.health_check()["healthy"] is False


@pytest.mark.parametrize(
    "now, hour, expected_hours",
    [
        (datetime(2026, 1, 1, 1, 0, tzinfo=UTC), 3, 2),
        (datetime(2026, 1, 1, 3, 0, tzinfo=UTC), 3, 24),
        (datetime(2026, 1, 1, 22, 0, tzinfo=UTC), 3, 5),
    ],
)
def test_seconds_until_hour(now, hour, expected_hours):
    assert seconds_until_hour(hour, now) == expected_hours * 3600
