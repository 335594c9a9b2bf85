"""Audit Service: immutable trail of emergency-path actions.

Every terminal confirmation request, escalation step, outside report and
permanent delivery failure is appended to a SHA-256 hash chain that can
be verified end to end with ``AuditLogger.verify_chain()``.
"""

from .audit_logger import AuditLogger, AuditAction, AuditEntity, AuditEntry

__all__ = [
    "AuditLogger",
    "AuditAction",
    "AuditEntity",
    "AuditEntry",
]
