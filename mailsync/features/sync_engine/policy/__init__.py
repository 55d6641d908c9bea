"""
Pure scheduling policies (no I/O).
"""

from .access import authorize, ensure_authorized, ensure_operator
from .aggregate import derive_job_status, progress_percentage
from .decomposition import default_estimate, plan_chunks, resolve_priority
from .error_classifier import categorize_error, counts_against_circuit
from .retry import compute_backoff, decide_retry

__all__ = [
    "authorize",
    "categorize_error",
    "compute_backoff",
    "counts_against_circuit",
    "decide_retry",
    "default_estimate",
    "derive_job_status",
    "ensure_authorized",
    "ensure_operator",
    "plan_chunks",
    "progress_percentage",
    "resolve_priority",
]
