"""
Domain models for the sync engine.

Plain dataclasses shared by repositories, services and the API layer.
Status and category vocabularies are Literal aliases so they read the same
in code, in SQL and in JSON payloads.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal

SyncKind = Literal["initial", "incremental", "manual", "retry"]
JobStatus = Literal["pending", "processing", "completed", "failed", "cancelled", "chunked"]
ChunkStatus = Literal["pending", "processing", "completed", "failed", "retrying"]
ErrorCategory = Literal[
    "timeout",
    "rate_limit",
    "network",
    "temporary",
    "auth",
    "permission",
    "not_found",
    "data_conflict",
    "processing_error",
    "unknown",
]
CircuitState = Literal["closed", "open", "half_open"]
UnitType = Literal["sync_job", "chunk_job"]
ActorRole = Literal["member", "operator", "service"]

SYNC_KINDS: tuple[str, ...] = ("initial", "incremental", "manual", "retry")
ERROR_CATEGORIES: tuple[str, ...] = (
    "timeout",
    "rate_limit",
    "network",
    "temporary",
    "auth",
    "permission",
    "not_found",
    "data_conflict",
    "processing_error",
    "unknown",
)
TERMINAL_JOB_STATUSES = frozenset({"completed", "failed", "cancelled"})
TERMINAL_CHUNK_STATUSES = frozenset({"completed", "failed"})

# Priority levels (higher = sooner)
PRIORITY_URGENT = 30
PRIORITY_HIGH = 20
PRIORITY_NORMAL = 10
PRIORITY_LOW = 5
PRIORITY_CLEANUP = 1
MIN_PRIORITY = PRIORITY_CLEANUP
MAX_PRIORITY = PRIORITY_URGENT

DEFAULT_PRIORITY_BY_KIND: dict[str, int] = {
    "manual": PRIORITY_URGENT,
    "initial": PRIORITY_HIGH,
    "incremental": PRIORITY_NORMAL,
    "retry": PRIORITY_LOW,
}


@dataclass(slots=True)
class SyncJob:
    """Represents a sync_jobs row."""

    id: str
    tenant_id: str
    mailbox_id: str
    sync_kind: str
    priority: int
    status: str
    attempts: int
    max_attempts: int
    estimated_count: int
    chunk_size: int
    total_chunks: int
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    next_retry_at: datetime | None = None
    emails_processed: int = 0
    emails_failed: int = 0
    error_category: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status not in TERMINAL_JOB_STATUSES


@dataclass(slots=True)
class ChunkJob:
    """Represents a chunk_jobs row."""

    id: str
    sync_job_id: str
    tenant_id: str
    mailbox_id: str
    chunk_number: int
    total_chunks: int
    chunk_size: int
    priority: int
    status: str
    attempts: int
    max_attempts: int
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    next_retry_at: datetime | None = None
    worker_id: str | None = None
    checkpoint_data: dict[str, Any] = field(default_factory=dict)
    emails_processed: int = 0
    emails_failed: int = 0
    duration_ms: int | None = None
    error_category: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_descriptor(self) -> "ChunkDescriptor":
        return ChunkDescriptor(
            chunk_id=self.id,
            sync_job_id=self.sync_job_id,
            tenant_id=self.tenant_id,
            mailbox_id=self.mailbox_id,
            chunk_number=self.chunk_number,
            total_chunks=self.total_chunks,
            chunk_size=self.chunk_size,
            offset=int((self.metadata or {}).get("offset", (self.chunk_number - 1) * self.chunk_size)),
            attempt=self.attempts,
            checkpoint=dict(self.checkpoint_data or {}),
        )


@dataclass(slots=True)
class ChunkPlan:
    """One planned slice produced by decomposition, before it is persisted."""

    chunk_number: int
    total_chunks: int
    chunk_size: int
    priority: int
    offset: int = 0


@dataclass(slots=True)
class ChunkDescriptor:
    """What the work executor receives for one chunk."""

    chunk_id: str
    sync_job_id: str
    tenant_id: str
    mailbox_id: str
    chunk_number: int
    total_chunks: int
    chunk_size: int
    offset: int
    attempt: int
    checkpoint: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "sync_job_id": self.sync_job_id,
            "tenant_id": self.tenant_id,
            "mailbox_id": self.mailbox_id,
            "chunk_number": self.chunk_number,
            "total_chunks": self.total_chunks,
            "chunk_size": self.chunk_size,
            "offset": self.offset,
            "attempt": self.attempt,
            "checkpoint": self.checkpoint,
        }


@dataclass(slots=True)
class ExecutionResult:
    """Successful executor outcome for one chunk."""

    emails_processed: int = 0
    emails_failed: int = 0
    duration_ms: int = 0
    checkpoint: dict[str, Any] | None = None


@dataclass(slots=True)
class ExecutorError:
    """Failed executor outcome for one chunk."""

    message: str | None
    category: str | None = None
    code: int | None = None
    retry_after_seconds: int | None = None
    checkpoint: dict[str, Any] | None = None


@dataclass(slots=True)
class RetryDecision:
    """Result of consulting the retry policy for a failed chunk."""

    category: str
    retry: bool
    delay_seconds: float | None
    reason: str
    recent_failures: int = 0


@dataclass(slots=True)
class ChunkOutcome:
    """
    What a complete/fail/sweep transition did, as reported by the repository.

    applied is False when the transition was a no-op (already final,
    stale worker, or cancelled parent); skip_reason says which.
    """

    applied: bool
    chunk: ChunkJob | None
    job_id: str | None
    job_status: str | None = None
    previous_job_status: str | None = None
    job_transitioned: bool = False
    pending_chunks: int = 0
    processing_chunks: int = 0
    completed_chunks: int = 0
    failed_chunks: int = 0
    total_chunks: int = 0
    skip_reason: str | None = None
    dead_lettered: bool = False

    @property
    def job_completed_now(self) -> bool:
        return self.job_transitioned and self.job_status == "completed"

    @property
    def job_failed_now(self) -> bool:
        return self.job_transitioned and self.job_status == "failed"


@dataclass(slots=True)
class ChunkCounts:
    """Per-status chunk counts for one parent job."""

    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


@dataclass(slots=True)
class JobProgress:
    job_id: str
    status: str
    total: int
    completed: int
    processing: int
    pending: int
    failed: int
    percentage: float
    total_emails_processed: int
    total_emails_failed: int
    chunks: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "total": self.total,
            "completed": self.completed,
            "processing": self.processing,
            "pending": self.pending,
            "failed": self.failed,
            "percentage": self.percentage,
            "total_emails_processed": self.total_emails_processed,
            "total_emails_failed": self.total_emails_failed,
            "chunks": self.chunks,
        }


@dataclass(slots=True)
class ProtectionState:
    """Represents a protection_state row (rate limiter + circuit breaker)."""

    tenant_id: str
    operation: str
    requests_per_minute: int
    requests_per_hour: int
    requests_per_day: int
    minute_count: int
    hour_count: int
    day_count: int
    minute_window_start: datetime
    hour_window_start: datetime
    day_window_start: datetime
    throttled_until: datetime | None
    throttle_reason: str | None
    circuit_state: str
    failure_count: int
    success_count: int
    failure_threshold: int
    success_threshold: int
    timeout_seconds: int
    opened_at: datetime | None = None
    next_attempt_allowed_at: datetime | None = None
    total_requests: int = 0
    total_failures: int = 0
    total_successes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "operation": self.operation,
            "rate_limit": {
                "requests_per_minute": self.requests_per_minute,
                "requests_per_hour": self.requests_per_hour,
                "requests_per_day": self.requests_per_day,
                "minute_count": self.minute_count,
                "hour_count": self.hour_count,
                "day_count": self.day_count,
                "throttled_until": _iso(self.throttled_until),
                "throttle_reason": self.throttle_reason,
                "total_requests": self.total_requests,
            },
            "circuit_breaker": {
                "state": self.circuit_state,
                "failure_count": self.failure_count,
                "success_count": self.success_count,
                "failure_threshold": self.failure_threshold,
                "success_threshold": self.success_threshold,
                "timeout_seconds": self.timeout_seconds,
                "opened_at": _iso(self.opened_at),
                "next_attempt_allowed_at": _iso(self.next_attempt_allowed_at),
                "total_failures": self.total_failures,
                "total_successes": self.total_successes,
            },
        }


@dataclass(slots=True)
class ProtectionDecision:
    """Whether the protection layer lets a call through, and when to come back."""

    allowed: bool
    reason: str
    retry_after_seconds: int = 0
    circuit_state: str | None = None


@dataclass(slots=True)
class DeadLetterRecord:
    """Represents a dead_letters row."""

    id: str
    tenant_id: str
    mailbox_id: str | None
    unit_type: str
    unit_id: str
    failure_reason: str
    error_category: str | None
    retry_count: int
    last_error_message: str | None
    unit_snapshot: dict[str, Any]
    error_context: dict[str, Any]
    archived_at: datetime
    reviewed: bool = False
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    resolution_notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "mailbox_id": self.mailbox_id,
            "unit_type": self.unit_type,
            "unit_id": self.unit_id,
            "failure_reason": self.failure_reason,
            "error_category": self.error_category,
            "retry_count": self.retry_count,
            "last_error_message": self.last_error_message,
            "unit_snapshot": self.unit_snapshot,
            "error_context": self.error_context,
            "archived_at": _iso(self.archived_at),
            "reviewed": self.reviewed,
            "reviewed_at": _iso(self.reviewed_at),
            "reviewed_by": self.reviewed_by,
            "resolution_notes": self.resolution_notes,
        }


@dataclass(slots=True)
class Actor:
    """Whoever is calling: a tenant member, a platform operator or a service."""

    actor_id: str
    tenant_id: str | None
    role: str = "member"


@dataclass(slots=True)
class Resource:
    """A tenant-owned thing an actor wants to touch."""

    kind: str
    tenant_id: str
    resource_id: str | None = None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def to_snapshot(unit: Any) -> dict[str, Any]:
    """JSON-safe dict of a dataclass row (datetimes as ISO strings)."""
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in asdict(unit).items()
    }
