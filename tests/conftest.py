from collections import Counter
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from mailsync.auth.verify import auth_dependency, service_key_dependency
from mailsync.features.sync_engine.domain.config import SchedulerConfig, configure_scheduler
from mailsync.features.sync_engine.domain.errors import ChunkNotFound, InvalidTransition, JobNotFound
from mailsync.features.sync_engine.domain.models import (
    TERMINAL_CHUNK_STATUSES,
    TERMINAL_JOB_STATUSES,
    Actor,
    ChunkCounts,
    ChunkJob,
    ChunkOutcome,
    DeadLetterRecord,
    ProtectionState,
    SyncJob,
    to_snapshot,
)
from mailsync.features.sync_engine.policy.aggregate import derive_job_status
from mailsync.features.sync_engine.repository.chunk_repository import ChunkRepository
from mailsync.features.sync_engine.repository.dead_letter_repository import DeadLetterRepository
from mailsync.features.sync_engine.repository.protection_repository import ProtectionRepository
from mailsync.features.sync_engine.repository.sync_job_repository import SyncJobRepository
from mailsync.features.sync_engine.services.invocation_trigger import trigger_outbox
from mailsync.infrastructure.audit.audit_logger import AuditLogger

TENANT_A = "tenant-a"
TENANT_B = "tenant-b"


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "user-123", "role": "member", "tenant_id": TENANT_A}

    return _override


@pytest.fixture
def operator_auth_override():
    def _override():
        return {"sub": "operator-1", "role": "operator"}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app, override=None):
        app.dependency_overrides[auth_dependency] = override or auth_override
        app.dependency_overrides[service_key_dependency] = lambda: "service"

    return _apply


@pytest.fixture(autouse=True)
def scheduler_config():
    """Every test starts from the built-in scheduler defaults."""
    config = configure_scheduler(SchedulerConfig())
    yield config
    configure_scheduler(SchedulerConfig())


@pytest.fixture
def member():
    return Actor(actor_id="user-123", tenant_id=TENANT_A, role="member")


@pytest.fixture
def operator():
    return Actor(actor_id="operator-1", tenant_id=None, role="operator")


# =====================================================================
# REDIS
# =====================================================================


class FakeRedis:
    def __init__(self, available: bool = True):
        self.lists: dict[str, list[str]] = {}
        self.available = available

    async def ping(self) -> bool:
        return self.available

    async def push_to_list(self, key: str, value: str, left: bool = True) -> bool:
        if not self.available:
            return False
        items = self.lists.setdefault(key, [])
        if left:
            items.insert(0, value)
        else:
            items.append(value)
        return True

    async def remove_from_list(self, key: str, value: str) -> bool:
        items = self.lists.get(key, [])
        before = len(items)
        self.lists[key] = [item for item in items if item != value]
        return len(self.lists[key]) < before

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> list[str]:
        items = self.lists.get(key, [])
        return items[start:] if end == -1 else items[start : end + 1]

    async def list_length(self, key: str) -> int:
        return len(self.lists.get(key, []))


@pytest.fixture
def fake_redis():
    return FakeRedis()


# =====================================================================
# AUDIT + TRIGGER
# =====================================================================


@pytest.fixture
def audit_events(monkeypatch):
    """Capture audit writes instead of inserting into sync_audit_log."""
    events: list[dict] = []

    async def fake_log(actor, action, tenant_id=None, job_id=None, chunk_id=None, reason=None,
                       request_id=None, metadata=None):
        events.append(
            {
                "actor": actor,
                "action": action,
                "tenant_id": tenant_id,
                "job_id": job_id,
                "chunk_id": chunk_id,
                "reason": reason,
                "request_id": request_id,
                "metadata": metadata or {},
            }
        )
        return True

    monkeypatch.setattr(AuditLogger, "log", staticmethod(fake_log))
    return events


@pytest.fixture
def triggers(monkeypatch):
    """Record trigger notifications instead of delivering them."""
    calls: list[dict] = []

    async def fake_enqueue(job_id, reason, chunks_remaining=None):
        calls.append({"job_id": job_id, "reason": reason, "chunks_remaining": chunks_remaining})
        return True

    monkeypatch.setattr(trigger_outbox, "enqueue", fake_enqueue)
    return calls


# =====================================================================
# SYNC STORE
# =====================================================================


class FakeSyncStore:
    """
    In-memory stand-in for the sync_jobs, chunk_jobs and dead_letters tables.

    Each method applies the same conditional transition as its SQL
    counterpart. Methods contain no awaits, so under asyncio every call is
    atomic just like a single UPDATE.
    """

    def __init__(self):
        self.jobs: dict[str, SyncJob] = {}
        self.chunks: dict[str, ChunkJob] = {}
        self.dead_letters: dict[str, DeadLetterRecord] = {}
        self.last_error_at: dict[str, datetime] = {}
        self.offset = timedelta(0)

    def now(self) -> datetime:
        return datetime.now(UTC) + self.offset

    def advance(self, **kwargs) -> None:
        self.offset += timedelta(**kwargs)

    def chunks_of(self, job_id: str) -> list[ChunkJob]:
        return sorted(
            (c for c in self.chunks.values() if c.sync_job_id == job_id),
            key=lambda c: c.chunk_number,
        )

    # ---------------------------------------------------------------
    # ChunkRepository
    # ---------------------------------------------------------------

    async def create_job_with_chunks(self, *, tenant_id, mailbox_id, sync_kind, priority, estimated_count,
                                     chunk_size, plans, chunk_max_attempts, job_max_attempts, metadata=None):
        now = self.now()
        job = SyncJob(
            id=str(uuid4()),
            tenant_id=tenant_id,
            mailbox_id=mailbox_id,
            sync_kind=sync_kind,
            priority=priority,
            status="pending",
            attempts=0,
            max_attempts=job_max_attempts,
            estimated_count=estimated_count,
            chunk_size=chunk_size,
            total_chunks=len(plans),
            created_at=now,
            metadata=dict(metadata or {}),
        )
        self.jobs[job.id] = job
        for plan in plans:
            chunk = ChunkJob(
                id=str(uuid4()),
                sync_job_id=job.id,
                tenant_id=tenant_id,
                mailbox_id=mailbox_id,
                chunk_number=plan.chunk_number,
                total_chunks=plan.total_chunks,
                chunk_size=plan.chunk_size,
                priority=plan.priority,
                status="pending",
                attempts=0,
                max_attempts=chunk_max_attempts,
                created_at=now,
                metadata={"offset": plan.offset},
            )
            self.chunks[chunk.id] = chunk
        return replace(job), [replace(c) for c in self.chunks_of(job.id)]

    async def get_chunk(self, chunk_id, *, connection=None):
        chunk = self.chunks.get(chunk_id)
        return replace(chunk) if chunk else None

    async def list_chunks(self, job_id, *, connection=None):
        return [replace(c) for c in self.chunks_of(job_id)]

    async def count_chunks(self, job_id, *, connection=None):
        chunks = self.chunks_of(job_id)
        return self._counts(job_id), sum(c.emails_processed for c in chunks), sum(c.emails_failed for c in chunks)

    async def count_recent_failures(self, category, window_minutes, tenant_id=None):
        cutoff = self.now() - timedelta(minutes=window_minutes)
        return sum(
            1
            for chunk_id, at in self.last_error_at.items()
            if at > cutoff
            and self.chunks[chunk_id].error_category == category
            and (tenant_id is None or self.chunks[chunk_id].tenant_id == tenant_id)
        )

    async def jobs_with_ready_work(self, limit=100):
        ready = []
        for job in sorted(self.jobs.values(), key=lambda j: -j.priority):
            if job.status in TERMINAL_JOB_STATUSES:
                continue
            chunks = self.chunks_of(job.id)
            if any(c.status == "processing" for c in chunks):
                continue
            count = sum(1 for c in chunks if self._ready(c))
            if count:
                ready.append({"job_id": job.id, "tenant_id": job.tenant_id, "ready_chunks": count})
        return ready[:limit]

    async def claim_next(self, worker_id, parallel_limit, tenant_limits=None):
        limits = tenant_limits or {}
        busy = Counter(c.tenant_id for c in self.chunks.values() if c.status == "processing")
        candidates = [
            c
            for c in self.chunks.values()
            if self._ready(c)
            and self.jobs[c.sync_job_id].status not in TERMINAL_JOB_STATUSES
            and busy[c.tenant_id] < limits.get(c.tenant_id, parallel_limit)
        ]
        if not candidates:
            return None

        candidates.sort(key=lambda c: (c.chunk_number, -self.jobs[c.sync_job_id].priority))
        chunk = candidates[0]
        chunk.status = "processing"
        chunk.started_at = self.now()
        chunk.attempts += 1
        chunk.worker_id = worker_id
        chunk.next_retry_at = None

        job = self.jobs[chunk.sync_job_id]
        if job.status in ("pending", "chunked"):
            job.status = "processing"
            job.started_at = job.started_at or self.now()
        return replace(chunk)

    async def release_claim(self, chunk_id, worker_id, retry_at):
        chunk = self.chunks.get(chunk_id)
        if not chunk or chunk.status != "processing" or chunk.worker_id != worker_id:
            return False
        chunk.status = "pending"
        chunk.attempts = max(chunk.attempts - 1, 0)
        chunk.worker_id = None
        chunk.started_at = None
        chunk.next_retry_at = retry_at
        return True

    async def save_checkpoint(self, chunk_id, worker_id, data):
        chunk = self.chunks.get(chunk_id)
        if not chunk or chunk.status != "processing" or chunk.worker_id != worker_id:
            return False
        chunk.checkpoint_data = dict(data)
        return True

    async def record_completion(self, chunk_id, result, worker_id=None):
        chunk, job = self._locate(chunk_id, "complete")
        if job.status == "cancelled":
            return self._skipped(chunk, job, "job_cancelled")
        if chunk.status not in ("processing", "pending"):
            return self._skipped(chunk, job, "already_final")

        chunk.status = "completed"
        chunk.completed_at = self.now()
        chunk.emails_processed = result.emails_processed
        chunk.emails_failed = result.emails_failed
        chunk.duration_ms = result.duration_ms
        if result.checkpoint is not None:
            chunk.checkpoint_data = dict(result.checkpoint)
        chunk.next_retry_at = None
        chunk.error_category = None
        chunk.error_message = None
        return self._recompute(job, chunk)

    async def record_failure(self, chunk_id, *, worker_id, category, message, retry_at, checkpoint=None,
                             failure_reason=None, error_context=None):
        chunk, job = self._locate(chunk_id, "fail")
        if job.status == "cancelled":
            return self._skipped(chunk, job, "job_cancelled")
        if chunk.status != "processing" or (worker_id is not None and chunk.worker_id != worker_id):
            if chunk.status in TERMINAL_CHUNK_STATUSES:
                reason = "already_final"
            elif chunk.status == "processing":
                reason = "stale_worker"
            else:
                reason = "not_processing"
            return self._skipped(chunk, job, reason)

        truncated = message[:500] if message else None
        chunk.worker_id = None
        chunk.error_category = category
        chunk.error_message = truncated
        if checkpoint is not None:
            chunk.checkpoint_data = dict(checkpoint)
        self.last_error_at[chunk.id] = self.now()

        dead_lettered = False
        if retry_at is not None:
            chunk.status = "pending"
            chunk.started_at = None
            chunk.next_retry_at = retry_at
        else:
            chunk.status = "failed"
            chunk.completed_at = self.now()
            chunk.next_retry_at = None
            dead_lettered = self._dead_letter(
                chunk,
                "chunk_job",
                failure_reason or f"{category}: retries exhausted",
                category,
                chunk.attempts,
                truncated,
                error_context,
            )

        outcome = self._recompute(job, chunk, failure_category=category, failure_message=truncated)
        outcome.dead_lettered = outcome.dead_lettered or dead_lettered
        return outcome

    async def reset_stuck(self, timeout_minutes):
        cutoff = self.now() - timedelta(minutes=timeout_minutes)
        rows = []
        for chunk in self.chunks.values():
            if chunk.status != "processing" or chunk.started_at >= cutoff or chunk.attempts >= chunk.max_attempts:
                continue
            rows.append(
                {
                    "chunk_id": chunk.id,
                    "job_id": chunk.sync_job_id,
                    "tenant_id": chunk.tenant_id,
                    "chunk_number": chunk.chunk_number,
                    "attempts": chunk.attempts,
                    "previous_worker_id": chunk.worker_id,
                    "stuck_seconds": int((self.now() - chunk.started_at).total_seconds()),
                }
            )
            chunk.status = "pending"
            chunk.worker_id = None
            chunk.started_at = None
        return rows

    async def find_exhausted_stuck(self, timeout_minutes):
        cutoff = self.now() - timedelta(minutes=timeout_minutes)
        return [
            replace(c)
            for c in self.chunks.values()
            if c.status == "processing" and c.started_at < cutoff and c.attempts >= c.max_attempts
        ]

    async def recompute_job(self, job_id):
        job = self.jobs.get(job_id)
        if not job or job.status == "cancelled":
            return ChunkOutcome(
                applied=False,
                chunk=None,
                job_id=job_id,
                job_status=job.status if job else None,
                skip_reason="job_cancelled" if job else "job_missing",
            )
        return self._recompute(job, None)

    async def force_reset(self, chunk_id, *, reset_attempts=False, reason=None):
        chunk, job = self._locate(chunk_id, "force_reset")
        if job.status == "cancelled":
            raise InvalidTransition(f"Sync job {job.id} is cancelled", operation="force_reset", recoverable=False)

        previous = chunk.status
        self._reset(chunk, reset_attempts, f"Force reset: {reason or 'manual reset'}")
        return previous, self._recompute(job, chunk)

    async def reset_all(self, job_id, *, reset_attempts=True, reason=None):
        job = self.jobs.get(job_id)
        if not job:
            raise JobNotFound(job_id, operation="reset_all_chunks")
        if job.status == "cancelled":
            raise InvalidTransition(f"Sync job {job_id} is cancelled", operation="reset_all_chunks", recoverable=False)

        count = 0
        for chunk in self.chunks_of(job_id):
            if chunk.status in ("processing", "failed"):
                self._reset(chunk, reset_attempts, f"Reset: {reason or 'manual reset'}")
                count += 1
        return count, self._recompute(job, None)

    # ---------------------------------------------------------------
    # SyncJobRepository
    # ---------------------------------------------------------------

    async def get_job(self, job_id, *, connection=None):
        job = self.jobs.get(job_id)
        return replace(job) if job else None

    async def cancel_job(self, job_id, reason=None):
        job = self.jobs.get(job_id)
        if not job or job.status in TERMINAL_JOB_STATUSES:
            return None
        job.status = "cancelled"
        job.completed_at = self.now()
        job.metadata = {**job.metadata, "cancel_reason": reason}
        return replace(job)

    async def find_stalled_jobs(self, limit=100):
        return [
            replace(job)
            for job in self.jobs.values()
            if job.status == "processing"
            and not any(c.status == "processing" for c in self.chunks_of(job.id))
        ][:limit]

    # ---------------------------------------------------------------
    # DeadLetterRepository
    # ---------------------------------------------------------------

    async def insert_dead_letter(self, *, tenant_id, mailbox_id, unit_type, unit_id, failure_reason, error_category,
                                 retry_count, last_error_message, unit_snapshot, error_context=None,
                                 connection=None):
        if any(r.unit_type == unit_type and r.unit_id == unit_id for r in self.dead_letters.values()):
            return None
        record = DeadLetterRecord(
            id=str(uuid4()),
            tenant_id=tenant_id,
            mailbox_id=mailbox_id,
            unit_type=unit_type,
            unit_id=unit_id,
            failure_reason=failure_reason[:500],
            error_category=error_category,
            retry_count=retry_count,
            last_error_message=last_error_message,
            unit_snapshot=unit_snapshot,
            error_context=error_context or {},
            archived_at=self.now(),
        )
        self.dead_letters[record.id] = record
        return replace(record)

    async def get_dead_letter(self, record_id):
        record = self.dead_letters.get(record_id)
        return replace(record) if record else None

    async def list_dead_letters(self, tenant_id=None, reviewed=None, limit=50):
        records = [
            r
            for r in self.dead_letters.values()
            if (tenant_id is None or r.tenant_id == tenant_id) and (reviewed is None or r.reviewed == reviewed)
        ]
        return [replace(r) for r in records[:limit]]

    async def mark_dead_letter_reviewed(self, record_id, reviewed_by, notes=None):
        record = self.dead_letters.get(record_id)
        if not record:
            return None
        record.reviewed = True
        record.reviewed_at = self.now()
        record.reviewed_by = reviewed_by
        record.resolution_notes = notes
        return replace(record)

    # ---------------------------------------------------------------
    # internals
    # ---------------------------------------------------------------

    def _ready(self, chunk: ChunkJob) -> bool:
        return (
            chunk.status == "pending"
            and chunk.attempts < chunk.max_attempts
            and (chunk.next_retry_at is None or chunk.next_retry_at <= self.now())
        )

    def _counts(self, job_id: str) -> ChunkCounts:
        chunks = self.chunks_of(job_id)
        return ChunkCounts(
            total=len(chunks),
            pending=sum(1 for c in chunks if c.status in ("pending", "retrying")),
            processing=sum(1 for c in chunks if c.status == "processing"),
            completed=sum(1 for c in chunks if c.status == "completed"),
            failed=sum(1 for c in chunks if c.status == "failed"),
        )

    def _locate(self, chunk_id: str, operation: str) -> tuple[ChunkJob, SyncJob]:
        chunk = self.chunks.get(chunk_id)
        if not chunk:
            raise ChunkNotFound(chunk_id, operation=operation)
        return chunk, self.jobs[chunk.sync_job_id]

    def _reset(self, chunk: ChunkJob, reset_attempts: bool, note: str) -> None:
        chunk.status = "pending"
        chunk.worker_id = None
        chunk.started_at = None
        chunk.completed_at = None
        chunk.next_retry_at = None
        chunk.error_message = note
        if reset_attempts:
            chunk.attempts = 0
        else:
            chunk.attempts = min(chunk.attempts, max(chunk.max_attempts - 1, 0))

    def _skipped(self, chunk: ChunkJob, job: SyncJob, reason: str) -> ChunkOutcome:
        return ChunkOutcome(
            applied=False,
            chunk=replace(chunk),
            job_id=job.id,
            job_status=job.status,
            previous_job_status=job.status,
            skip_reason=reason,
        )

    def _dead_letter(self, unit, unit_type, reason, category, retry_count, message, context) -> bool:
        record = None
        if not any(r.unit_type == unit_type and r.unit_id == unit.id for r in self.dead_letters.values()):
            record = DeadLetterRecord(
                id=str(uuid4()),
                tenant_id=unit.tenant_id,
                mailbox_id=unit.mailbox_id,
                unit_type=unit_type,
                unit_id=unit.id,
                failure_reason=reason,
                error_category=category,
                retry_count=retry_count,
                last_error_message=message,
                unit_snapshot=to_snapshot(unit),
                error_context=context or {},
                archived_at=self.now(),
            )
            self.dead_letters[record.id] = record
        return record is not None

    def _recompute(self, job: SyncJob, chunk: ChunkJob | None, failure_category=None, failure_message=None):
        counts = self._counts(job.id)
        chunks = self.chunks_of(job.id)
        job.emails_processed = sum(c.emails_processed for c in chunks)
        job.emails_failed = sum(c.emails_failed for c in chunks)

        previous = job.status
        status = derive_job_status(counts)
        transitioned = status != previous and previous != "cancelled"
        dead_lettered = False
        if transitioned:
            job.status = status
            if status != "pending":
                job.started_at = job.started_at or self.now()
            job.completed_at = self.now() if status in ("completed", "failed") else None
            if status == "failed":
                job.error_category = failure_category or job.error_category
                job.error_message = failure_message or job.error_message
                dead_lettered = self._dead_letter(
                    job,
                    "sync_job",
                    "no remaining chunks can make progress",
                    job.error_category,
                    chunk.attempts if chunk else job.attempts,
                    job.error_message,
                    {"chunks": {"total": counts.total, "completed": counts.completed, "failed": counts.failed}},
                )

        return ChunkOutcome(
            applied=True,
            chunk=replace(chunk) if chunk else None,
            job_id=job.id,
            job_status=job.status,
            previous_job_status=previous,
            job_transitioned=transitioned,
            pending_chunks=counts.pending,
            processing_chunks=counts.processing,
            completed_chunks=counts.completed,
            failed_chunks=counts.failed,
            total_chunks=counts.total,
            dead_lettered=dead_lettered,
        )


@pytest.fixture
def sync_store(monkeypatch):
    """Route the sync engine repositories to an in-memory store."""
    store = FakeSyncStore()

    for name in (
        "create_job_with_chunks",
        "get_chunk",
        "list_chunks",
        "count_chunks",
        "count_recent_failures",
        "jobs_with_ready_work",
        "claim_next",
        "release_claim",
        "save_checkpoint",
        "record_completion",
        "record_failure",
        "reset_stuck",
        "find_exhausted_stuck",
        "recompute_job",
        "force_reset",
        "reset_all",
    ):
        monkeypatch.setattr(ChunkRepository, name, getattr(store, name))

    for name in ("get_job", "cancel_job", "find_stalled_jobs"):
        monkeypatch.setattr(SyncJobRepository, name, getattr(store, name))

    monkeypatch.setattr(DeadLetterRepository, "insert", store.insert_dead_letter)
    monkeypatch.setattr(DeadLetterRepository, "get", store.get_dead_letter)
    monkeypatch.setattr(DeadLetterRepository, "list_records", store.list_dead_letters)
    monkeypatch.setattr(DeadLetterRepository, "mark_reviewed", store.mark_dead_letter_reviewed)
    return store


class FakeDirectory:
    def __init__(self, mailboxes: dict[str, str] | None = None):
        self.mailboxes = mailboxes if mailboxes is not None else {"mbx-1": TENANT_A, "mbx-2": TENANT_B}

    async def resolve_tenant(self, mailbox_id: str) -> str | None:
        return self.mailboxes.get(mailbox_id)


@pytest.fixture
def directory():
    return FakeDirectory()


# =====================================================================
# PROTECTION STATE
# =====================================================================

_WINDOW_SPANS = {
    "minute": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
}


class FakeProtectionStore:
    """In-memory protection_state rows with the same single-statement semantics."""

    def __init__(self):
        self.states: dict[tuple[str, str], ProtectionState] = {}
        self.throttle_events = 0

    def state(self, tenant_id: str, operation: str = "execute_chunk") -> ProtectionState:
        return self.states[(tenant_id, operation)]

    async def ensure_state(self, tenant_id, operation, config):
        if (tenant_id, operation) in self.states:
            return
        now = datetime.now(UTC)
        self.states[(tenant_id, operation)] = ProtectionState(
            tenant_id=tenant_id,
            operation=operation,
            requests_per_minute=config.rate_limit_per_minute,
            requests_per_hour=config.rate_limit_per_hour,
            requests_per_day=config.rate_limit_per_day,
            minute_count=0,
            hour_count=0,
            day_count=0,
            minute_window_start=now,
            hour_window_start=now,
            day_window_start=now,
            throttled_until=None,
            throttle_reason=None,
            circuit_state="closed",
            failure_count=0,
            success_count=0,
            failure_threshold=config.circuit_failure_threshold,
            success_threshold=config.circuit_success_threshold,
            timeout_seconds=config.circuit_timeout_seconds,
        )

    async def get_state(self, tenant_id, operation):
        state = self.states.get((tenant_id, operation))
        return replace(state) if state else None

    async def list_for_tenant(self, tenant_id):
        return [replace(s) for (t, _), s in sorted(self.states.items()) if t == tenant_id]

    async def list_open_circuits(self):
        return [replace(s) for s in self.states.values() if s.circuit_state == "open"]

    async def try_acquire(self, tenant_id, operation):
        state = self.states.get((tenant_id, operation))
        if not state:
            return None
        now = datetime.now(UTC)
        if state.throttled_until and state.throttled_until > now:
            return None

        counts = {}
        for name, span in _WINDOW_SPANS.items():
            expired = getattr(state, f"{name}_window_start") <= now - span
            counts[name] = 0 if expired else getattr(state, f"{name}_count")
            if counts[name] >= getattr(state, f"requests_per_{name}"):
                return None

        for name, span in _WINDOW_SPANS.items():
            if getattr(state, f"{name}_window_start") <= now - span:
                setattr(state, f"{name}_window_start", now)
            setattr(state, f"{name}_count", counts[name] + 1)
        state.total_requests += 1
        return replace(state)

    async def record_throttle_event(self, tenant_id, operation):
        self.throttle_events += 1

    async def try_half_open(self, tenant_id, operation):
        state = self.states.get((tenant_id, operation))
        now = datetime.now(UTC)
        if state and state.circuit_state == "open" and state.next_attempt_allowed_at <= now:
            state.circuit_state = "half_open"
            state.success_count = 0
            return True
        return False

    async def record_success(self, tenant_id, operation):
        state = self.states.get((tenant_id, operation))
        if not state:
            return None
        closes = state.circuit_state == "half_open" and state.success_count + 1 >= state.success_threshold
        if closes:
            state.circuit_state = "closed"
            state.success_count = 0
            state.opened_at = None
            state.next_attempt_allowed_at = None
        elif state.circuit_state == "half_open":
            state.success_count += 1
        else:
            state.success_count = 0
        state.failure_count = 0
        state.throttled_until = None
        state.throttle_reason = None
        state.total_successes += 1
        return replace(state)

    async def record_failure(self, tenant_id, operation, *, counts_against_circuit, throttle_seconds=None):
        state = self.states.get((tenant_id, operation))
        if not state:
            return None
        now = datetime.now(UTC)
        if counts_against_circuit:
            trips = state.circuit_state == "half_open" or (
                state.circuit_state == "closed" and state.failure_count + 1 >= state.failure_threshold
            )
            if trips:
                state.circuit_state = "open"
                state.opened_at = now
                state.next_attempt_allowed_at = now + timedelta(seconds=state.timeout_seconds)
            state.failure_count += 1
            state.success_count = 0
        if throttle_seconds is not None:
            until = now + timedelta(seconds=throttle_seconds)
            state.throttled_until = max(state.throttled_until or now, until)
            state.throttle_reason = "upstream_rate_limit"
            self.throttle_events += 1
        state.total_failures += 1
        return replace(state)


@pytest.fixture
def protection_store(monkeypatch):
    store = FakeProtectionStore()
    for name in (
        "ensure_state",
        "get_state",
        "list_for_tenant",
        "list_open_circuits",
        "try_acquire",
        "record_throttle_event",
        "try_half_open",
        "record_success",
        "record_failure",
    ):
        monkeypatch.setattr(ProtectionRepository, name, getattr(store, name))
    return store
