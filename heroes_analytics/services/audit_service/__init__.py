"""Audit Service - hash-chained compliance trail for pipeline actions."""
from .audit_logger import (
    AuditAction,
    AuditEntity,
    AuditEntry,
    AuditLogger,
    GENESIS_HASH,
    verify_entries,
)
from .audit_repository import AuditRepository

__all__ = [
    "AuditAction",
    "AuditEntity",
    "AuditEntry",
    "AuditLogger",
    "AuditRepository",
    "GENESIS_HASH",
    "verify_entries",
]
