"""
Request and response models for the sync engine API.
"""

from typing import Any

from pydantic import BaseModel, Field

from mailsync.features.sync_engine.domain.models import MAX_PRIORITY, MIN_PRIORITY


class CreateSyncJobRequest(BaseModel):
    """Request for creating a sync job for one mailbox."""

    mailbox_id: str = Field(..., min_length=1, description="Mailbox to synchronize")
    sync_kind: str = Field(
        default="incremental",
        pattern="^(initial|incremental|manual|retry)$",
        description="initial, incremental, manual or retry",
    )
    estimated_count: int | None = Field(
        default=None, ge=1, description="Estimated number of emails (defaults depend on sync_kind)"
    )
    priority: int | None = Field(default=None, ge=MIN_PRIORITY, le=MAX_PRIORITY, description="Higher runs sooner")
    metadata: dict[str, Any] | None = Field(default=None, description="Free-form caller metadata")


class CreateSyncJobResponse(BaseModel):
    job_id: str
    tenant_id: str
    status: str
    total_chunks: int
    chunk_size: int
    estimated_count: int


class ChunkProgress(BaseModel):
    chunk_id: str
    chunk_number: int
    chunk_size: int
    status: str
    attempts: int
    emails_processed: int
    emails_failed: int
    next_retry_at: str | None = None
    error_category: str | None = None


class JobProgressResponse(BaseModel):
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
    chunks: list[ChunkProgress] = Field(default_factory=list)


class CancelSyncJobRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class CancelSyncJobResponse(BaseModel):
    job_id: str
    status: str
    cancelled_at: str | None = None


class WorkerInvokeRequest(BaseModel):
    """Payload sent by the invocation trigger."""

    trigger_source: str | None = None
    parent_sync_job_id: str | None = None
    reason: str | None = None
    chunks_remaining: int | None = None


class WorkerInvokeResponse(BaseModel):
    accepted: bool
    worker_id: str


class ForceResetRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500, description="Why the operator is intervening")
    reset_attempts: bool = Field(default=False, description="Also reset the attempt counter")


class ResetChunksRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    reset_attempts: bool = Field(default=True)


class EscalateChunkRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class ReviewDeadLetterRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)
