"""Audit Service: hash-chained trail of pipeline decisions.

Every classified submission, suppressed alert, moderator action and
mandatory-report outcome is appended here with a SHA-256 chain so
tampering is detectable.
"""

from .audit_logger import (
    AuditLogger,
    AuditAction,
    AuditEntity,
    AuditEntry,
    GENESIS_HASH,
    verify_entries,
)
from .audit_repository import AuditRepository

__all__ = [
    "AuditLogger",
    "AuditAction",
    "AuditEntity",
    "AuditEntry",
    "AuditRepository",
    "GENESIS_HASH",
    "verify_entries",
]
