"""Audit Service: append-only audit trail for incident activity.

Mirrors every incident timeline event into a hash-chained log that
outlives the incident's personal data and is purged after 90 days.
"""

from .audit_logger import (
    AUDIT_RETENTION,
    AuditAction,
    AuditEntity,
    AuditEntry,
    AuditLogger,
)

__all__ = [
    "AUDIT_RETENTION",
    "AuditAction",
    "AuditEntity",
    "AuditEntry",
    "AuditLogger",
]
