"""
Exceptions raised by the sync engine.

All of them carry `operation` and `recoverable` like DatabaseError so the
API layer and job loops can treat them uniformly.
"""


class SyncEngineError(Exception):
    """Base exception for sync engine operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class ParentNotFound(SyncEngineError):
    """The mailbox/tenant linkage for a new job could not be resolved."""

    def __init__(self, mailbox_id: str):
        super().__init__(
            f"Mailbox {mailbox_id} not found or not linked to a tenant",
            operation="create_sync_job",
            recoverable=False,
        )
        self.mailbox_id = mailbox_id


class JobNotFound(SyncEngineError):
    def __init__(self, job_id: str, operation: str | None = None):
        super().__init__(f"Sync job {job_id} not found", operation=operation, recoverable=False)
        self.job_id = job_id


class ChunkNotFound(SyncEngineError):
    def __init__(self, chunk_id: str, operation: str | None = None):
        super().__init__(f"Chunk {chunk_id} not found", operation=operation, recoverable=False)
        self.chunk_id = chunk_id


class AccessDenied(SyncEngineError):
    def __init__(self, actor_id: str, action: str, resource_kind: str):
        super().__init__(
            f"Actor {actor_id} may not {action} {resource_kind}",
            operation=action,
            recoverable=False,
        )
        self.actor_id = actor_id


class InvalidTransition(SyncEngineError):
    """Requested state change is not allowed from the unit's current state."""


class DeadLetterNotFound(SyncEngineError):
    def __init__(self, record_id: str, operation: str | None = None):
        super().__init__(f"Dead letter {record_id} not found", operation=operation, recoverable=False)
        self.record_id = record_id
