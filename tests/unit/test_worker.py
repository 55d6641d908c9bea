from unittest.mock import AsyncMock

import pytest

from mailsync.jobs import worker


@pytest.fixture
def worker_resources(monkeypatch):
    db_pool = AsyncMock()
    redis = AsyncMock()
    outbox = AsyncMock()
    monkeypatch.setattr(worker, "db_pool", db_pool)
    monkeypatch.setattr(worker, "fast_redis", redis)
    monkeypatch.setattr(worker, "trigger_outbox", outbox)
    return db_pool, redis, outbox


@pytest.mark.asyncio
async def test_run_worker_runs_job(worker_resources):
    db_pool, redis, outbox = worker_resources
    called = {"ok": False}

    async def dummy_job():
        called["ok"] = True

    worker.JOB_REGISTRY["dummy"] = dummy_job
    try:
        await worker.run_worker("dummy")
    finally:
        del worker.JOB_REGISTRY["dummy"]

    assert called["ok"] is True
    db_pool.initialize.assert_awaited_once()
    outbox.drain.assert_awaited_once()
    db_pool.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_worker_survives_missing_redis(worker_resources):
    db_pool, redis, _ = worker_resources
    redis.initialize.side_effect = RuntimeError("connection refused")
    ran = []

    async def dummy_job():
        ran.append(True)

    worker.JOB_REGISTRY["dummy"] = dummy_job
    try:
        await worker.run_worker("dummy")
    finally:
        del worker.JOB_REGISTRY["dummy"]

    assert ran == [True]
    redis.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_worker_unknown_job(worker_resources):
    with pytest.raises(ValueError):
        await worker.run_worker("missing")

    worker_resources[0].initialize.assert_not_awaited()


def test_registry_lists_engine_jobs():
    assert {"recovery_sweep", "retention_cleanup", "trigger_relay", "sync_invocation", "apply_schema"} <= set(
        worker.JOB_REGISTRY
    )
