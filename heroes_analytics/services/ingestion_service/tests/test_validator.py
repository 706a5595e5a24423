"""Tests for ingestion batch validation."""
from datetime import datetime

import pytest

from heroes_analytics.shared.config import IngestionConfig
from heroes_analytics.shared.errors import PIIDetectedError, ValidationError
from heroes_analytics.shared.models import BehavioralCategory, SyncState
from heroes_analytics.services.ingestion_service import BatchValidator

NOW = datetime(2024, 3, 4, 9, 0)


def wire_event(n=1, **overrides):
    event = {
        "event_id": f"evt-{n}",
        "anonymous_subject_hash": f"{n % 16:x}" * 64,
        "classroom_id": "room-1",
        "lesson_id": "lesson-1",
        "category": "empathy",
        "interaction_type": "peer_help",
        "score": 4,
        "occurred_at": "2024-03-04T08:00:00Z",
        "metadata": {"engagement_level": "high"},
    }
    event.update(overrides)
    return event


def wire_batch(events=None, **overrides):
    batch = {
        "batch_id": "batch-1",
        "classroom_id": "room-1",
        "events": events if events is not None else [wire_event(1), wire_event(2)],
    }
    batch.update(overrides)
    return batch


@pytest.fixture
def validator():
    return BatchValidator(IngestionConfig(max_events_per_batch=10), clock=lambda: NOW)


class TestValidBatch:

    def test_builds_events_tagged_with_batch(self, validator):
        batch = validator.validate(wire_batch())

        assert batch.batch_id == "batch-1"
        assert batch.classroom_id == "room-1"
        assert [e.event_id for e in batch.events] == ["evt-1", "evt-2"]
        first = batch.events[0]
        assert first.batch_id == "batch-1"
        assert first.sync_state == SyncState.SYNCED
        assert first.category == BehavioralCategory.EMPATHY
        assert first.occurred_at == datetime(2024, 3, 4, 8, 0)

    def test_event_classroom_defaults_to_batch(self, validator):
        event = wire_event()
        del event["classroom_id"]

        batch = validator.validate(wire_batch([event]))

        assert batch.events[0].classroom_id == "room-1"

    def test_small_clock_skew_tolerated(self, validator):
        batch = validator.validate(wire_batch([wire_event(occurred_at="2024-03-04T09:05:00Z")]))

        assert len(batch.events) == 1


class TestRejectedBatch:

    @pytest.mark.parametrize("payload", [
        None,
        [],
        wire_batch(batch_id=""),
        wire_batch(classroom_id=None),
        wire_batch(events=[]),
        wire_batch(events="evt-1"),
    ])
    def test_malformed_batch(self, validator, payload):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate(payload)

        assert exc_info.value.reason_code == "validation_failed"

    def test_too_many_events(self, validator):
        events = [wire_event(n) for n in range(11)]

        with pytest.raises(ValidationError, match="maximum"):
            validator.validate(wire_batch(events))

    @pytest.mark.parametrize("overrides", [
        {"anonymous_subject_hash": "ABC"},
        {"anonymous_subject_hash": "A" * 64},
        {"anonymous_subject_hash": "g" * 64},
        {"category": "bravery"},
        {"interaction_type": "told_a_joke"},
        {"score": 0},
        {"score": 6},
        {"score": "4"},
        {"score": True},
        {"occurred_at": "not a time"},
        {"occurred_at": "2024-03-04T10:00:00Z"},
        {"metadata": {"home_address": "x"}},
        {"metadata": {"favorite_color": "blue"}},
        {"classroom_id": "room-2"},
        {"event_id": ""},
    ])
    def test_invalid_event_rejects_whole_batch(self, validator, overrides):
        events = [wire_event(1), wire_event(2, **overrides)]

        with pytest.raises(ValidationError) as exc_info:
            validator.validate(wire_batch(events))

        assert exc_info.value.reason_code == "validation_failed"
        assert exc_info.value.details["event_index"] == 1
        assert exc_info.value.details["batch_id"] == "batch-1"

    def test_missing_field(self, validator):
        event = wire_event()
        del event["score"]

        with pytest.raises(ValidationError) as exc_info:
            validator.validate(wire_batch([event]))

        assert exc_info.value.details["missing"] == ["score"]

    def test_duplicate_event_id_in_batch(self, validator):
        with pytest.raises(ValidationError, match="Duplicate"):
            validator.validate(wire_batch([wire_event(1), wire_event(1)]))

    @pytest.mark.parametrize("overrides", [
        {"lesson_id": "jane.doe@example.com"},
        {"metadata": {"interaction_context": "call 555-123-4567"}},
        {"metadata": {"lesson_segment": "met at 42 Maple Street"}},
        {"event_id": "jane.doe@school.org"},
        {"metadata": {"time_spent": 5551234567}},
    ])
    def test_pii_rejected(self, validator, overrides):
        with pytest.raises(PIIDetectedError) as exc_info:
            validator.validate(wire_batch([wire_event(**overrides)]))

        assert exc_info.value.reason_code == "pii_detected"
        assert not exc_info.value.retriable

    @pytest.mark.parametrize("classroom_id", ["555-123-4567", "jane.doe@school.org"])
    def test_pii_in_batch_classroom_rejected(self, validator, classroom_id):
        batch = wire_batch([wire_event(1, classroom_id=classroom_id)], classroom_id=classroom_id)

        with pytest.raises(PIIDetectedError) as exc_info:
            validator.validate(batch)

        assert exc_info.value.details["fields"] == ["classroom_id"]
