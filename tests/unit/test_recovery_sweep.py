import pytest

from mailsync.features.sync_engine.services.claim_manager import claim_manager
from mailsync.features.sync_engine.services.job_service import SyncJobService
from mailsync.features.sync_engine.services.recovery_sweep import run_recovery_sweep
from mailsync.infrastructure.audit.audit_logger import RECOVERY_SWEEP_ACTOR


@pytest.fixture
def create_job(sync_store, audit_events, triggers, directory, member):
    async def _create(estimated_count=50):
        return await SyncJobService(directory=directory).create_sync_job(
            member, "mbx-1", "initial", estimated_count=estimated_count
        )

    return _create


@pytest.mark.asyncio
async def test_stuck_chunk_is_reset_after_timeout(create_job, sync_store, audit_events, triggers):
    job, _ = await create_job()
    chunk = await claim_manager.claim("worker-1")
    sync_store.advance(minutes=11)

    summary = await run_recovery_sweep()

    stored = sync_store.chunks[chunk.id]
    assert summary["chunks_reset"] == 1
    assert stored.status == "pending"
    assert stored.attempts == 1
    assert stored.worker_id is None
    assert stored.started_at is None

    event = next(e for e in audit_events if e["action"] == "chunk_reset_stuck")
    assert event["actor"] == RECOVERY_SWEEP_ACTOR
    assert event["metadata"]["previous_worker_id"] == "worker-1"
    assert triggers[-1] == {"job_id": job.id, "reason": "recovery_sweep", "chunks_remaining": 1}


@pytest.mark.asyncio
async def test_chunk_within_timeout_is_left_alone(create_job, sync_store):
    await create_job()
    chunk = await claim_manager.claim("worker-1")
    sync_store.advance(minutes=9)

    summary = await run_recovery_sweep()

    assert summary["chunks_reset"] == 0
    assert sync_store.chunks[chunk.id].status == "processing"
    assert sync_store.chunks[chunk.id].worker_id == "worker-1"


@pytest.mark.asyncio
async def test_stuck_chunk_without_attempts_left_fails(create_job, sync_store, audit_events):
    job, _ = await create_job()
    chunk = await claim_manager.claim("worker-1")
    sync_store.chunks[chunk.id].attempts = 3
    sync_store.advance(minutes=11)

    summary = await run_recovery_sweep()

    assert summary["chunks_failed"] == 1
    assert summary["jobs_failed"] == 1
    assert sync_store.chunks[chunk.id].status == "failed"
    assert sync_store.chunks[chunk.id].error_category == "timeout"
    assert sync_store.jobs[job.id].status == "failed"
    assert {r.unit_type for r in sync_store.dead_letters.values()} == {"chunk_job", "sync_job"}
    assert "chunk_failed_stuck" in [e["action"] for e in audit_events]


@pytest.mark.asyncio
async def test_stalled_parent_is_recomputed(create_job, sync_store, audit_events):
    job, chunks = await create_job()
    sync_store.jobs[job.id].status = "processing"
    sync_store.chunks[chunks[0].id].status = "completed"

    summary = await run_recovery_sweep(notify=False)

    assert summary["jobs_recomputed"] == 1
    assert sync_store.jobs[job.id].status == "completed"
    event = next(e for e in audit_events if e["action"] == "sync_job_recomputed")
    assert event["metadata"] == {"previous_status": "processing", "status": "completed"}


@pytest.mark.asyncio
async def test_sweep_notifies_jobs_with_ready_work(create_job, sync_store, triggers):
    job, _ = await create_job(estimated_count=250)
    triggers.clear()

    summary = await run_recovery_sweep(notify=True)

    assert summary["jobs_notified"] == 1
    assert triggers == [{"job_id": job.id, "reason": "recovery_sweep", "chunks_remaining": 3}]


@pytest.mark.asyncio
async def test_sweep_without_notify_sends_nothing(create_job, sync_store, triggers):
    await create_job(estimated_count=250)
    triggers.clear()

    summary = await run_recovery_sweep(notify=False)

    assert summary == {
        "chunks_reset": 0,
        "chunks_failed": 0,
        "jobs_recomputed": 0,
        "jobs_failed": 0,
        "jobs_notified": 0,
    }
    assert triggers == []


@pytest.mark.asyncio
async def test_sweep_is_idempotent(create_job, sync_store):
    await create_job()
    await claim_manager.claim("worker-1")
    sync_store.advance(minutes=11)

    first = await run_recovery_sweep(notify=False)
    second = await run_recovery_sweep(notify=False)

    assert first["chunks_reset"] == 1
    assert second["chunks_reset"] == 0
