import structlog

from mailsync.infrastructure.observability.logging import (
    bind_worker_context,
    clear_worker_context,
    request_log_context,
)


def test_worker_context_is_cleared_without_dropping_request_id():
    structlog.contextvars.clear_contextvars()

    with request_log_context("req-1"):
        bind_worker_context("worker-1", chunk_id="c1", job_id="j1", tenant_id="tenant-a")
        assert structlog.contextvars.get_contextvars() == {
            "request_id": "req-1",
            "worker_id": "worker-1",
            "chunk_id": "c1",
            "job_id": "j1",
            "tenant_id": "tenant-a",
        }

        clear_worker_context()
        assert structlog.contextvars.get_contextvars() == {"request_id": "req-1"}

    assert structlog.contextvars.get_contextvars() == {}
