"""Batch validation for the Ingestion Endpoint.

A batch is accepted or rejected as a whole: the first invalid event fails
the batch with a non-retriable error, so the client never loops on bad
data and never has to track partially accepted batches.
"""
import logging
import re
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, List, Mapping, Optional, Tuple

from heroes_analytics.shared.config import IngestionConfig
from heroes_analytics.shared.errors import ValidationError
from heroes_analytics.shared.models import InteractionEvent, SyncState, parse_timestamp
from heroes_analytics.shared.utils import (
    PIIGuard,
    validate_category,
    validate_interaction_type,
    validate_metadata,
    validate_score,
)

logger = logging.getLogger(__name__)

SUBJECT_HASH_PATTERN = re.compile(r"^[0-9a-f]{64}$")
MAX_ID_LENGTH = 64

REQUIRED_EVENT_FIELDS = (
    "event_id",
    "anonymous_subject_hash",
    "lesson_id",
    "category",
    "interaction_type",
    "score",
    "occurred_at",
)


@dataclass(frozen=True)
class ValidatedBatch:
    batch_id: str
    classroom_id: str
    events: Tuple[InteractionEvent, ...]


def _require_id(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip() or len(value) > MAX_ID_LENGTH:
        raise ValidationError(
            f"{field_name} must be a non-empty string of at most {MAX_ID_LENGTH} characters",
            details={"field": field_name},
        )
    return value


class BatchValidator:
    """Validates an uploaded batch payload and builds its events."""

    def __init__(
        self,
        config: Optional[IngestionConfig] = None,
        pii_guard: Optional[PIIGuard] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or IngestionConfig()
        self.pii_guard = pii_guard or PIIGuard()
        self._clock = clock or datetime.utcnow

    def validate(self, payload: Any) -> ValidatedBatch:
        """Validate a batch payload.

        Args:
            payload: Decoded JSON body with batch_id, classroom_id and events

        Returns:
            ValidatedBatch with events tagged with the batch id

        Raises:
            ValidationError: Malformed batch or event (``validation_failed``)
            PIIDetectedError: PII in a free-text field (``pii_detected``)
        """
        if not isinstance(payload, Mapping):
            raise ValidationError("Batch payload must be a JSON object")

        batch_id = _require_id(payload.get("batch_id"), "batch_id")
        classroom_id = _require_id(payload.get("classroom_id"), "classroom_id")
        self.pii_guard.ensure_clean(
            {"batch_id": batch_id, "classroom_id": classroom_id},
            context="ingestion",
        )

        raw_events = payload.get("events")
        if not isinstance(raw_events, list) or not raw_events:
            raise ValidationError(
                "Batch must contain at least one event",
                details={"batch_id": batch_id},
            )
        if len(raw_events) > self.config.max_events_per_batch:
            raise ValidationError(
                "Batch exceeds maximum event count",
                details={
                    "batch_id": batch_id,
                    "event_count": len(raw_events),
                    "max_events": self.config.max_events_per_batch,
                },
            )

        latest_allowed = self._clock() + timedelta(minutes=self.config.max_clock_skew_minutes)
        events: List[InteractionEvent] = []
        seen_ids = set()

        for index, raw in enumerate(raw_events):
            try:
                event = self._validate_event(raw, classroom_id, latest_allowed)
            except ValidationError as e:
                e.details.setdefault("batch_id", batch_id)
                e.details.setdefault("event_index", index)
                raise
            if event.event_id in seen_ids:
                raise ValidationError(
                    "Duplicate event_id within batch",
                    details={"batch_id": batch_id, "event_index": index},
                )
            seen_ids.add(event.event_id)
            events.append(replace(event, batch_id=batch_id))

        return ValidatedBatch(batch_id, classroom_id, tuple(events))

    def _validate_event(
        self,
        raw: Any,
        classroom_id: str,
        latest_allowed: datetime,
    ) -> InteractionEvent:
        if not isinstance(raw, Mapping):
            raise ValidationError("Event must be a JSON object")

        missing = [f for f in REQUIRED_EVENT_FIELDS if f not in raw]
        if missing:
            raise ValidationError("Event is missing required fields", details={"missing": missing})

        event_classroom = raw.get("classroom_id", classroom_id)
        if event_classroom != classroom_id:
            raise ValidationError("Event classroom does not match batch classroom")

        subject_hash = raw["anonymous_subject_hash"]
        if not isinstance(subject_hash, str) or not SUBJECT_HASH_PATTERN.match(subject_hash):
            raise ValidationError("anonymous_subject_hash must be 64 lowercase hex characters")

        event_id = _require_id(raw["event_id"], "event_id")
        lesson_id = _require_id(raw["lesson_id"], "lesson_id")
        category = validate_category(raw["category"])
        interaction_type = validate_interaction_type(raw["interaction_type"])
        score = validate_score(raw["score"])

        metadata = raw.get("metadata") or {}
        validate_metadata(metadata)

        try:
            occurred_at = parse_timestamp(raw["occurred_at"])
        except ValueError:
            raise ValidationError("occurred_at is not a valid ISO-8601 timestamp")
        if occurred_at > latest_allowed:
            raise ValidationError("occurred_at is in the future")

        self.pii_guard.ensure_clean(
            {
                "event_id": event_id,
                "lesson_id": lesson_id,
                **{f"metadata.{k}": v for k, v in metadata.items()},
            },
            context="ingestion",
        )

        return InteractionEvent(
            event_id=event_id,
            anonymous_subject_hash=subject_hash,
            classroom_id=classroom_id,
            lesson_id=lesson_id,
            category=category,
            interaction_type=interaction_type,
            score=score,
            occurred_at=occurred_at,
            metadata=dict(metadata),
            sync_state=SyncState.SYNCED,
        )
