import pytest
from fastapi.testclient import TestClient

from mailsync.features.sync_engine.services.job_service import sync_job_service
from mailsync.main import app


@pytest.fixture
def engine_state(sync_store, audit_events, triggers, directory, monkeypatch):
    """In-memory repositories plus a mailbox directory for the API singletons."""
    monkeypatch.setattr(sync_job_service, "directory", directory)
    return sync_store


@pytest.fixture
def client(engine_state, apply_auth_override):
    apply_auth_override(app)
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def operator_client(engine_state, apply_auth_override, operator_auth_override):
    apply_auth_override(app, operator_auth_override)
    yield TestClient(app)
    app.dependency_overrides.clear()
