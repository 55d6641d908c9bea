import pytest

from mailsync.features.sync_engine.domain.errors import AccessDenied
from mailsync.features.sync_engine.domain.models import Actor, ChunkCounts, Resource
from mailsync.features.sync_engine.policy.access import authorize, ensure_authorized, ensure_operator
from mailsync.features.sync_engine.policy.aggregate import derive_job_status, progress_percentage


@pytest.mark.parametrize(
    ("counts", "expected"),
    [
        (ChunkCounts(total=3, pending=3), "pending"),
        (ChunkCounts(total=3, pending=2, processing=1), "processing"),
        (ChunkCounts(total=3, pending=2, completed=1), "processing"),
        (ChunkCounts(total=3, completed=3), "completed"),
        (ChunkCounts(total=3, completed=2, failed=1), "failed"),
        (ChunkCounts(total=3, pending=1, completed=1, failed=1), "processing"),
        (ChunkCounts(total=0), "pending"),
    ],
)
def test_derive_job_status(counts, expected):
    assert derive_job_status(counts) == expected


def test_progress_percentage():
    assert progress_percentage(ChunkCounts(total=3, completed=1, pending=2)) == 33.33
    assert progress_percentage(ChunkCounts(total=0)) == 0.0


def test_member_scoped_to_own_tenant():
    actor = Actor(actor_id="u1", tenant_id="t1")

    assert authorize(actor, Resource("sync_job", "t1"), "read")
    assert authorize(actor, Resource("sync_job", "t1"), "write")
    assert not authorize(actor, Resource("sync_job", "t2"), "read")
    assert not authorize(actor, Resource("sync_job", "t1"), "manage")


def test_member_without_tenant_is_denied():
    actor = Actor(actor_id="u1", tenant_id=None)

    with pytest.raises(AccessDenied):
        ensure_authorized(actor, Resource("mailbox", "t1"), "read")


def test_operator_and_service_are_privileged():
    resource = Resource("sync_job", "t9")

    assert authorize(Actor(actor_id="op", tenant_id=None, role="operator"), resource, "manage")
    assert authorize(Actor(actor_id="svc", tenant_id=None, role="service"), resource, "write")


def test_ensure_operator_rejects_members():
    with pytest.raises(AccessDenied):
        ensure_operator(Actor(actor_id="u1", tenant_id="t1"), "force_reset")

    ensure_operator(Actor(actor_id="op", tenant_id=None, role="operator"), "force_reset")
