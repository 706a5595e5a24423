"""Retention Service - archive-then-delete sweeps and consent purges."""
from .archive_repository import ArchiveRepository
from .retention_engine import PurgeResult, RetentionEngine, RetentionSummary
from .retention_log import RetentionLogRepository

__all__ = [
    "ArchiveRepository",
    "PurgeResult",
    "RetentionEngine",
    "RetentionSummary",
    "RetentionLogRepository",
]
