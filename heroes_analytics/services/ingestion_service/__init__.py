"""Ingestion Service - validates and persists uploaded batches."""
from .event_repository import DurableEventRepository, IngestedBatch, IngestedBatchRepository
from .handler import IngestionHandler, IngestResult
from .validator import BatchValidator, ValidatedBatch, SUBJECT_HASH_PATTERN

__all__ = [
    "DurableEventRepository",
    "IngestedBatch",
    "IngestedBatchRepository",
    "IngestionHandler",
    "IngestResult",
    "BatchValidator",
    "ValidatedBatch",
    "SUBJECT_HASH_PATTERN",
]
