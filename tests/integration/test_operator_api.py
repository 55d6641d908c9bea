"""
Operator endpoints: manual recovery, dead letters, stats and protection state.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from mailsync.features.sync_engine.api import router as router_module
from mailsync.features.sync_engine.domain.models import ExecutorError
from mailsync.features.sync_engine.services.claim_manager import claim_manager
from mailsync.features.sync_engine.services.job_service import sync_job_service
from mailsync.features.sync_engine.services.outcome_recorder import outcome_recorder
from mailsync.features.sync_engine.services.protection import protection_layer


@pytest.fixture
def failed_chunk(engine_state, member):
    """Create a one-chunk job and fail its chunk permanently."""

    async def _create():
        job, chunks = await sync_job_service.create_sync_job(member, "mbx-1", "initial", estimated_count=50)
        chunk = await claim_manager.claim("worker-1")
        await outcome_recorder.fail(chunk.id, ExecutorError(message="forbidden", code=403), "worker-1")
        return job, chunks[0]

    return _create


def run(coro):
    """Drive a service coroutine from a sync test."""
    return asyncio.run(coro)


def test_member_cannot_use_operator_endpoints(client):
    assert client.get("/operator/stats/queue").status_code == 403
    assert client.get("/operator/dead-letters").status_code == 403


def test_force_reset_chunk(operator_client, failed_chunk, engine_state, audit_events):
    job, chunk = run(failed_chunk())

    response = operator_client.post(
        f"/operator/chunks/{chunk.id}/force-reset",
        json={"reason": "token refreshed", "reset_attempts": True},
        headers={"X-Request-ID": "req-7"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["previous_status"] == "failed"
    assert data["job_status"] == "pending"
    assert engine_state.chunks[chunk.id].attempts == 0
    assert audit_events[-1]["request_id"] == "req-7"
    assert audit_events[-1]["actor"] == "operator-1"


def test_force_reset_requires_reason(operator_client):
    assert operator_client.post("/operator/chunks/c1/force-reset", json={}).status_code == 422


def test_force_reset_unknown_chunk(operator_client):
    response = operator_client.post("/operator/chunks/missing/force-reset", json={"reason": "x"})

    assert response.status_code == 404


def test_reset_chunks_of_job(operator_client, failed_chunk):
    job, _ = run(failed_chunk())

    response = operator_client.post(f"/operator/sync-jobs/{job.id}/reset-chunks", json={"reason": "incident"})

    assert response.status_code == 200
    assert response.json()["reset_count"] == 1


def test_escalate_and_review_dead_letter(operator_client, engine_state, member):
    _, chunks = run(sync_job_service.create_sync_job(member, "mbx-1", "initial", estimated_count=50))

    escalated = operator_client.post(f"/operator/chunks/{chunks[0].id}/escalate", json={"reason": "odd payload"})
    listed = operator_client.get("/operator/dead-letters", params={"tenant_id": "tenant-a", "reviewed": False})

    assert escalated.status_code == 200
    assert escalated.json()["archived"] is True
    assert listed.json()["count"] == 1

    record_id = listed.json()["records"][0]["id"]
    reviewed = operator_client.post(f"/operator/dead-letters/{record_id}/review", json={"notes": "benign"})

    assert reviewed.status_code == 200
    assert reviewed.json()["reviewed"] is True
    assert operator_client.post("/operator/dead-letters/missing/review", json={}).status_code == 404


def test_queue_stats(operator_client, monkeypatch):
    monkeypatch.setattr(
        router_module,
        "get_queue_stats",
        AsyncMock(return_value={"pending": 2, "processing": 1, "queue_health": "healthy"}),
    )

    response = operator_client.get("/operator/stats/queue")

    assert response.status_code == 200
    assert response.json()["queue_health"] == "healthy"


def test_performance_stats_validates_days(operator_client):
    assert operator_client.get("/operator/stats/performance", params={"days": 0}).status_code == 422


def test_protection_state_and_open_circuits(operator_client, protection_store):
    async def trip():
        await protection_layer.before_call("tenant-a")
        for _ in range(5):
            await protection_layer.after_call("tenant-a", success=False, category="network")

    run(trip())

    state = operator_client.get("/operator/protection/tenant-a").json()
    circuits = operator_client.get("/operator/circuits/open").json()

    assert state["operations"][0]["circuit_breaker"]["state"] == "open"
    assert circuits["count"] == 1


def test_manual_sweep(operator_client, engine_state):
    response = operator_client.post("/operator/sweep")

    assert response.status_code == 200
    assert response.json()["chunks_reset"] == 0
