"""
Domain subpackage for the sync engine.
"""

from .config import SchedulerConfig, configure_scheduler, get_scheduler_config
from .errors import (
    AccessDenied,
    ChunkNotFound,
    DeadLetterNotFound,
    InvalidTransition,
    JobNotFound,
    ParentNotFound,
    SyncEngineError,
)
from .models import (
    Actor,
    ChunkDescriptor,
    ChunkJob,
    ChunkOutcome,
    ChunkPlan,
    DeadLetterRecord,
    ExecutionResult,
    ExecutorError,
    JobProgress,
    ProtectionDecision,
    ProtectionState,
    Resource,
    RetryDecision,
    SyncJob,
)

__all__ = [
    "AccessDenied",
    "Actor",
    "ChunkDescriptor",
    "ChunkJob",
    "ChunkNotFound",
    "ChunkOutcome",
    "ChunkPlan",
    "DeadLetterNotFound",
    "DeadLetterRecord",
    "ExecutionResult",
    "ExecutorError",
    "InvalidTransition",
    "JobNotFound",
    "JobProgress",
    "ParentNotFound",
    "ProtectionDecision",
    "ProtectionState",
    "Resource",
    "RetryDecision",
    "SchedulerConfig",
    "SyncEngineError",
    "SyncJob",
    "configure_scheduler",
    "get_scheduler_config",
]
