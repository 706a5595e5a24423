"""Shared domain models for the analytics pipeline."""
from .analytics import (
    BehavioralCategory,
    SyncState,
    SYNC_STATE_TRANSITIONS,
    BatchStatus,
    WindowStatus,
    AggregationLevel,
    InteractionEvent,
    Batch,
    AnonymousSaltRecord,
    AggregationWindow,
    RetentionLogEntry,
    parse_timestamp,
)

__all__ = [
    "BehavioralCategory",
    "SyncState",
    "SYNC_STATE_TRANSITIONS",
    "BatchStatus",
    "WindowStatus",
    "AggregationLevel",
    "InteractionEvent",
    "Batch",
    "AnonymousSaltRecord",
    "AggregationWindow",
    "RetentionLogEntry",
    "parse_timestamp",
]
