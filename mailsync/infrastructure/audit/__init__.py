"""
Audit trail for scheduler, recovery and operator actions.
"""

from mailsync.infrastructure.audit.audit_logger import AuditLogger, audit_logger

__all__ = ["AuditLogger", "audit_logger"]
