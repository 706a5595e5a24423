"""Domain models for the anonymized analytics pipeline.

Events and batches are frozen dataclasses: state changes produce new
instances via ``dataclasses.replace`` inside the owning store, so a record
handed to a caller never changes underneath it.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple


class BehavioralCategory(Enum):
    """Heroes in Waiting focus areas."""
    EMPATHY = "empathy"
    CONFIDENCE = "confidence"
    COMMUNICATION = "communication"
    LEADERSHIP = "leadership"


class SyncState(Enum):
    """Lifecycle of a locally captured event."""
    CAPTURED = "captured"
    BATCHED = "batched"
    UPLOADING = "uploading"
    SYNCED = "synced"
    FAILED = "failed"


# Forward-only, with two exceptions: a retriable upload failure returns the
# events to BATCHED, and a manual re-batch moves FAILED back to BATCHED.
SYNC_STATE_TRANSITIONS: Dict[SyncState, FrozenSet[SyncState]] = {
    SyncState.CAPTURED: frozenset({SyncState.BATCHED}),
    SyncState.BATCHED: frozenset({SyncState.UPLOADING, SyncState.FAILED}),
    SyncState.UPLOADING: frozenset({
        SyncState.SYNCED,
        SyncState.FAILED,
        SyncState.BATCHED,
    }),
    SyncState.SYNCED: frozenset(),
    SyncState.FAILED: frozenset({SyncState.BATCHED}),
}


class BatchStatus(Enum):
    """Lifecycle of an upload batch."""
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"


class WindowStatus(Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


class AggregationLevel(Enum):
    """Time-bucket width for cached rollups."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    def bucket_bounds(self, day: date) -> Tuple[datetime, datetime]:
        """Return the [start, end) datetimes of the bucket containing ``day``."""
        if self == AggregationLevel.DAILY:
            start = day
            end = day + timedelta(days=1)
        elif self == AggregationLevel.WEEKLY:
            start = day - timedelta(days=day.weekday())
            end = start + timedelta(days=7)
        else:
            start = day.replace(day=1)
            if start.month == 12:
                end = start.replace(year=start.year + 1, month=1)
            else:
                end = start.replace(month=start.month + 1)
        return (
            datetime.combine(start, datetime.min.time()),
            datetime.combine(end, datetime.min.time()),
        )


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp into a naive UTC datetime.

    Raises:
        ValueError: If the value is not a valid timestamp
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unsupported timestamp value: {value!r}")

    if parsed.tzinfo is not None:
        offset = parsed.utcoffset() or timedelta(0)
        parsed = (parsed - offset).replace(tzinfo=None)
    return parsed


@dataclass(frozen=True)
class InteractionEvent:
    """A single anonymized behavioral interaction.

    ``anonymous_subject_hash`` is the per-day salted digest produced by the
    Anonymizer; the raw identifier never appears on this record.
    """
    event_id: str
    anonymous_subject_hash: str
    classroom_id: str
    lesson_id: str
    category: BehavioralCategory
    interaction_type: str
    score: int
    occurred_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    sync_state: SyncState = SyncState.CAPTURED
    attempt_count: int = 0
    last_attempt_at: Optional[datetime] = None
    batch_id: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.score, bool) or not isinstance(self.score, int):
            raise ValueError(f"Score must be an integer, got {self.score!r}")
        if not 1 <= self.score <= 5:
            raise ValueError(f"Score must be 1-5, got {self.score}")

    def to_payload(self) -> Dict[str, Any]:
        """Wire representation used in batch uploads."""
        return {
            "event_id": self.event_id,
            "anonymous_subject_hash": self.anonymous_subject_hash,
            "classroom_id": self.classroom_id,
            "lesson_id": self.lesson_id,
            "category": self.category.value,
            "interaction_type": self.interaction_type,
            "score": self.score,
            "occurred_at": self.occurred_at.isoformat() + "Z",
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_payload(
        cls,
        data: Mapping[str, Any],
        sync_state: SyncState = SyncState.SYNCED,
    ) -> "InteractionEvent":
        """Build an event from its wire representation.

        Raises:
            KeyError: If a required field is missing
            ValueError: If a field has an invalid value
        """
        return cls(
            event_id=str(data["event_id"]),
            anonymous_subject_hash=str(data["anonymous_subject_hash"]),
            classroom_id=str(data["classroom_id"]),
            lesson_id=str(data["lesson_id"]),
            category=BehavioralCategory(data["category"]),
            interaction_type=str(data["interaction_type"]),
            score=data["score"],
            occurred_at=parse_timestamp(data["occurred_at"]),
            metadata=dict(data.get("metadata") or {}),
            sync_state=sync_state,
        )


@dataclass(frozen=True)
class Batch:
    """A fixed set of events uploaded together as one unit."""
    batch_id: str
    classroom_id: str
    event_ids: Tuple[str, ...]
    status: BatchStatus = BatchStatus.PENDING
    attempt_count: int = 0
    next_retry_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    retry_of: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.event_ids)

    @property
    def is_active(self) -> bool:
        return self.status != BatchStatus.FAILED

    def is_due(self, now: datetime) -> bool:
        """Pending and past its backoff delay."""
        return self.status == BatchStatus.PENDING and (
            self.next_retry_at is None or self.next_retry_at <= now
        )


@dataclass(frozen=True)
class AnonymousSaltRecord:
    """Daily secret salt. Deleting it makes that day's hashes unlinkable."""
    salt_date: date
    salt_value: str
    is_active: bool = True
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(frozen=True)
class AggregationWindow:
    """Cached rollup for one classroom, category and time bucket."""
    cache_key: str
    classroom_id: str
    category: BehavioralCategory
    level: AggregationLevel
    window_start: datetime
    window_end: datetime
    payload: Dict[str, Any]
    computed_at: datetime
    expires_at: datetime
    status: WindowStatus = WindowStatus.ACTIVE
    record_count: int = 0
    computation_time_ms: float = 0.0

    def is_fresh(self, now: datetime) -> bool:
        return self.status == WindowStatus.ACTIVE and now < self.expires_at

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """True if [window_start, window_end) intersects [start, end]."""
        return self.window_start <= end and start < self.window_end

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cache_key": self.cache_key,
            "classroom_id": self.classroom_id,
            "category": self.category.value,
            "level": self.level.value,
            "window_start": _format_ts(self.window_start),
            "window_end": _format_ts(self.window_end),
            "payload": self.payload,
            "computed_at": _format_ts(self.computed_at),
            "expires_at": _format_ts(self.expires_at),
            "status": self.status.value,
            "record_count": self.record_count,
        }


@dataclass(frozen=True)
class RetentionLogEntry:
    """Append-only audit record of one retention sweep."""
    entry_id: str
    table_name: str
    policy_days: int
    records_archived: int
    records_deleted: int
    executed_at: datetime
    duration_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "table_name": self.table_name,
            "policy_days": self.policy_days,
            "records_archived": self.records_archived,
            "records_deleted": self.records_deleted,
            "executed_at": _format_ts(self.executed_at),
            "duration_ms": round(self.duration_ms, 2),
        }
