"""
Scheduler configuration.

Chunk sizing, retry and protection thresholds are loaded once from Settings
into an immutable SchedulerConfig. Tests and callers swap it through
configure_scheduler(); per-tenant tweaks go through for_tenant().

Usage:
    config = get_scheduler_config()
    tenant_config = config.for_tenant(tenant_id)
"""

from dataclasses import dataclass, field, replace
from typing import Any

from mailsync.config import settings

# Keys a tenant override may set
TENANT_OVERRIDABLE_KEYS = frozenset({"base_chunk_size", "parallel_limit"})


@dataclass(frozen=True, slots=True)
class SchedulerConfig:
    base_chunk_size: int = 100
    min_chunk_size: int = 25
    max_chunk_size: int = 500
    chunk_max_attempts: int = 3
    job_max_attempts: int = 3
    parallel_limit: int = 3
    stuck_timeout_minutes: int = 10
    execution_timeout_seconds: float = 540.0
    backoff_max_seconds: int = 300
    backoff_jitter_ms: int = 1000
    recent_failure_window_minutes: int = 15
    recent_failure_threshold: int = 5
    degraded_backoff_multiplier: int = 4
    rate_limit_per_minute: int = 60
    rate_limit_per_hour: int = 3600
    rate_limit_per_day: int = 86400
    rate_limit_backoff_seconds: int = 60
    circuit_failure_threshold: int = 5
    circuit_success_threshold: int = 3
    circuit_timeout_seconds: int = 300
    tenant_overrides: dict[str, dict[str, int]] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, source=None) -> "SchedulerConfig":
        source = source or settings
        values: dict[str, Any] = source.get_scheduler_settings()
        values["tenant_overrides"] = dict(values.get("tenant_overrides") or {})
        return cls(**values)

    @property
    def effective_chunk_size(self) -> int:
        """Base chunk size clamped into [min_chunk_size, max_chunk_size]."""
        return max(self.min_chunk_size, min(self.base_chunk_size, self.max_chunk_size))

    def with_overrides(self, **overrides: Any) -> "SchedulerConfig":
        unknown = set(overrides) - set(self.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown scheduler setting(s): {', '.join(sorted(unknown))}")
        return replace(self, **overrides)

    def for_tenant(self, tenant_id: str | None) -> "SchedulerConfig":
        if not tenant_id:
            return self
        override = self.tenant_overrides.get(str(tenant_id))
        if not override:
            return self
        applicable = {k: v for k, v in override.items() if k in TENANT_OVERRIDABLE_KEYS}
        return replace(self, **applicable) if applicable else self

    def parallel_limit_overrides(self) -> dict[str, int]:
        """Tenant id -> parallel limit, for tenants that override it."""
        return {
            tenant_id: int(values["parallel_limit"])
            for tenant_id, values in self.tenant_overrides.items()
            if "parallel_limit" in values
        }


_scheduler_config: SchedulerConfig | None = None


def get_scheduler_config() -> SchedulerConfig:
    global _scheduler_config
    if _scheduler_config is None:
        _scheduler_config = SchedulerConfig.from_settings()
    return _scheduler_config


def configure_scheduler(config: SchedulerConfig | None = None, **overrides: Any) -> SchedulerConfig:
    """
    Replace the active scheduler configuration.

    Passing no config rebuilds from Settings; keyword overrides are applied
    on top of whichever base is used.
    """
    global _scheduler_config
    base = config or SchedulerConfig.from_settings()
    _scheduler_config = base.with_overrides(**overrides) if overrides else base
    return _scheduler_config
