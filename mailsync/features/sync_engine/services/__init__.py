"""
Sync engine services.

Module-level singletons whose names match their module (claim_manager,
outcome_recorder, recovery_sweep) are imported from the module itself.
"""

from .claim_manager import ClaimManager
from .dead_letter_service import DeadLetterService, dead_letter_service
from .executor import HttpWorkExecutor, WorkExecutor
from .invocation_trigger import HttpInvocationTrigger, TriggerOutbox, trigger_outbox
from .job_service import SyncJobService, sync_job_service
from .manual_recovery import ManualRecoveryService, manual_recovery_service
from .outcome_recorder import OutcomeRecorder
from .protection import CircuitBreaker, ProtectionLayer, RateLimiter, protection_layer
from .recovery_sweep import RecoverySweep, run_recovery_sweep
from .stats_service import classify_queue_health, get_chunk_performance_stats, get_queue_stats
from .worker_runner import run_worker_invocation

__all__ = [
    "CircuitBreaker",
    "ClaimManager",
    "DeadLetterService",
    "HttpInvocationTrigger",
    "HttpWorkExecutor",
    "ManualRecoveryService",
    "OutcomeRecorder",
    "ProtectionLayer",
    "RateLimiter",
    "RecoverySweep",
    "SyncJobService",
    "TriggerOutbox",
    "WorkExecutor",
    "classify_queue_health",
    "dead_letter_service",
    "get_chunk_performance_stats",
    "get_queue_stats",
    "manual_recovery_service",
    "protection_layer",
    "run_recovery_sweep",
    "run_worker_invocation",
    "sync_job_service",
    "trigger_outbox",
]
