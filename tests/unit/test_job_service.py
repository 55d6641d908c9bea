import pytest

from mailsync.features.sync_engine.domain.config import configure_scheduler
from mailsync.features.sync_engine.domain.errors import (
    AccessDenied,
    InvalidTransition,
    JobNotFound,
    ParentNotFound,
)
from mailsync.features.sync_engine.domain.models import Actor
from mailsync.features.sync_engine.services.job_service import SyncJobService


@pytest.fixture
def service(directory):
    return SyncJobService(directory=directory)


@pytest.mark.asyncio
async def test_create_sync_job_plans_chunks(sync_store, audit_events, triggers, service, member):
    job, chunks = await service.create_sync_job(member, "mbx-1", "initial", estimated_count=250)

    assert job.total_chunks == 3
    assert job.tenant_id == "tenant-a"
    assert job.status == "pending"
    assert [c.chunk_size for c in chunks] == [100, 100, 50]
    assert all(c.status == "pending" and c.attempts == 0 for c in chunks)
    assert triggers == [{"job_id": job.id, "reason": "job_created", "chunks_remaining": 3}]
    assert audit_events[0]["action"] == "sync_job_created"
    assert audit_events[0]["metadata"]["total_chunks"] == 3


@pytest.mark.asyncio
async def test_create_sync_job_uses_tenant_chunk_size(sync_store, audit_events, triggers, service, member):
    configure_scheduler(tenant_overrides={"tenant-a": {"base_chunk_size": 50}})

    job, chunks = await service.create_sync_job(member, "mbx-1", "initial", estimated_count=120)

    assert job.chunk_size == 50
    assert [c.chunk_size for c in chunks] == [50, 50, 20]


@pytest.mark.asyncio
async def test_create_sync_job_unknown_mailbox(sync_store, triggers, service, member):
    with pytest.raises(ParentNotFound):
        await service.create_sync_job(member, "missing", "initial")

    assert sync_store.jobs == {}
    assert triggers == []


@pytest.mark.asyncio
async def test_create_sync_job_other_tenant_denied(sync_store, triggers, service, member):
    with pytest.raises(AccessDenied):
        await service.create_sync_job(member, "mbx-2", "initial")

    assert sync_store.jobs == {}


@pytest.mark.asyncio
async def test_create_sync_job_rejects_unknown_kind(sync_store, service, member):
    with pytest.raises(ValueError):
        await service.create_sync_job(member, "mbx-1", "everything")


@pytest.mark.asyncio
async def test_get_progress_reports_counts(sync_store, audit_events, triggers, service, member):
    job, chunks = await service.create_sync_job(member, "mbx-1", "initial", estimated_count=250)
    sync_store.chunks[chunks[0].id].status = "completed"
    sync_store.chunks[chunks[0].id].emails_processed = 100
    sync_store.chunks[chunks[1].id].status = "processing"

    progress = await service.get_progress(member, job.id)

    assert (progress.total, progress.completed, progress.processing, progress.pending) == (3, 1, 1, 1)
    assert progress.percentage == 33.33
    assert progress.total_emails_processed == 100
    assert [c["chunk_number"] for c in progress.chunks] == [1, 2, 3]


@pytest.mark.asyncio
async def test_get_progress_scoped_to_tenant(sync_store, audit_events, triggers, service, member):
    job, _ = await service.create_sync_job(member, "mbx-1", "initial")
    outsider = Actor(actor_id="user-999", tenant_id="tenant-b")

    with pytest.raises(AccessDenied):
        await service.get_progress(outsider, job.id)

    with pytest.raises(JobNotFound):
        await service.get_progress(member, "no-such-job")


@pytest.mark.asyncio
async def test_cancel_sync_job(sync_store, audit_events, triggers, service, member):
    job, _ = await service.create_sync_job(member, "mbx-1", "incremental")

    cancelled = await service.cancel_sync_job(member, job.id, reason="mailbox disconnected")

    assert cancelled.status == "cancelled"
    assert cancelled.metadata["cancel_reason"] == "mailbox disconnected"
    assert audit_events[-1]["action"] == "sync_job_cancelled"

    with pytest.raises(InvalidTransition):
        await service.cancel_sync_job(member, job.id)
