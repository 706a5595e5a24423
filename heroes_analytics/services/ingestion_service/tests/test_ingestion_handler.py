"""Tests for the Ingestion Service handler and HTTP endpoint."""
import re
from datetime import date, datetime

import pytest
from unittest.mock import MagicMock

from heroes_analytics.shared.config import IngestionConfig
from heroes_analytics.shared.database import ConnectionManager, RepositoryError
from heroes_analytics.shared.errors import ServerUnavailableError
from heroes_analytics.shared.models import WindowStatus
from heroes_analytics.shared.utils import PII_PATTERNS
from heroes_analytics.services.analytics_service import CacheKey
from heroes_analytics.services.audit_service import AuditAction
from heroes_analytics.services.ingestion_service import IngestedBatchRepository, IngestionHandler
from heroes_analytics.services.ingestion_service.handler import app, build_handler, set_handler

NOW = datetime(2024, 3, 4, 9, 0)
TOKENS = {"tok-room-1": "room-1"}


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


def wire_batch(batch_id="batch-1", events=None):
    return {
        "batch_id": batch_id,
        "classroom_id": "room-1",
        "events": events if events is not None else [wire_event(n) for n in range(1, 4)],
    }


def authorize(token, classroom_id):
    return TOKENS.get(token) == classroom_id


@pytest.fixture
def handler():
    h = IngestionHandler(authorizer=authorize, clock=lambda: NOW)
    set_handler(h)
    return h


@pytest.fixture
def client(handler):
    """Flask test client."""
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client


class TestIngest:

    def test_accepts_and_persists(self, handler):
        result = handler.ingest(wire_batch(), token="tok-room-1")

        assert result.success
        assert result.accepted_count == 3
        assert result.stored_count == 3
        assert not result.duplicate_batch
        assert handler.event_repository.count() == 3

    def test_redelivered_batch_is_noop(self, handler):
        handler.ingest(wire_batch(), token="tok-room-1")

        again = handler.ingest(wire_batch(), token="tok-room-1")

        assert again.success
        assert again.duplicate_batch
        assert again.accepted_count == 3
        assert handler.event_repository.count() == 3

    def test_duplicate_events_in_new_batch_silently_accepted(self, handler):
        handler.ingest(wire_batch(), token="tok-room-1")

        result = handler.ingest(
            wire_batch("batch-2", [wire_event(3), wire_event(4)]),
            token="tok-room-1",
        )

        assert result.success
        assert result.accepted_count == 2
        assert result.stored_count == 1
        assert handler.event_repository.count() == 4

    def test_one_bad_event_rejects_batch(self, handler):
        events = [wire_event(1), wire_event(2, interaction_type="told_a_joke")]

        result = handler.ingest(wire_batch(events=events), token="tok-room-1")

        assert not result.success
        assert result.reason_code == "validation_failed"
        assert handler.event_repository.count() == 0

    def test_rejected_batch_can_be_resent_fixed(self, handler):
        bad = [wire_event(1, score=9)]
        handler.ingest(wire_batch(events=bad), token="tok-room-1")

        result = handler.ingest(wire_batch(events=[wire_event(1)]), token="tok-room-1")

        assert result.success
        assert not result.duplicate_batch

    def test_pii_rejected(self, handler):
        events = [wire_event(1, lesson_id="ask jane.doe@example.com")]

        result = handler.ingest(wire_batch(events=events), token="tok-room-1")

        assert result.reason_code == "pii_detected"
        assert result.http_status == 400

    def test_pii_in_identifiers_never_stored(self):
        handler = IngestionHandler(
            config=IngestionConfig(require_authorization=False), clock=lambda: NOW
        )
        event = wire_event(
            1,
            event_id="jane.doe@school.org",
            classroom_id="555-123-4567",
            metadata={"time_spent": 5551234567},
        )
        batch = {"batch_id": "batch-1", "classroom_id": "555-123-4567", "events": [event]}

        result = handler.ingest(batch)

        assert result.reason_code == "pii_detected"
        assert handler.event_repository.count() == 0

    @pytest.mark.parametrize("token", [None, "tok-unknown"])
    def test_unauthorized(self, handler, token):
        result = handler.ingest(wire_batch(), token=token)

        assert result.reason_code == "unauthorized"
        assert result.http_status == 401
        assert handler.event_repository.count() == 0

    def test_no_authorizer_fails_closed(self):
        handler = IngestionHandler(clock=lambda: NOW)

        assert handler.ingest(wire_batch(), token="tok-room-1").reason_code == "unauthorized"

    def test_authorization_can_be_disabled(self):
        handler = IngestionHandler(
            config=IngestionConfig(require_authorization=False), clock=lambda: NOW
        )

        assert handler.ingest(wire_batch()).success

    def test_invalidates_covering_windows(self, handler):
        handler.ingest(wire_batch(), token="tok-room-1")
        key = CacheKey.for_day("room-1", "empathy", "daily", date(2024, 3, 4))
        before = handler.aggregation_cache.get_or_compute(key)
        assert before.payload["event_count"] == 3

        handler.ingest(wire_batch("batch-2", [wire_event(5)]), token="tok-room-1")

        stored = handler.aggregation_cache.window_repository.get(key.to_string())
        assert stored.status == WindowStatus.EXPIRED
        assert handler.aggregation_cache.get_or_compute(key).payload["event_count"] == 4

    def test_audit_trail(self, handler):
        handler.ingest(wire_batch(), token="tok-room-1")
        handler.ingest(wire_batch("batch-2", [wire_event(1, score=0)]), token="tok-room-1")

        ingested = handler.audit_logger.query(action=AuditAction.BATCH_INGESTED)
        rejected = handler.audit_logger.query(action=AuditAction.BATCH_REJECTED)
        assert [e.entity_id for e in ingested] == ["batch-1"]
        assert rejected[0].details["reason_code"] == "validation_failed"
        assert handler.audit_logger.verify_chain()

    def test_storage_failure_is_retriable(self, handler, monkeypatch):
        def fail(events):
            raise RepositoryError("connection lost")

        monkeypatch.setattr(handler.event_repository, "insert_many", fail)

        with pytest.raises(ServerUnavailableError) as exc_info:
            handler.ingest(wire_batch(), token="tok-room-1")

        assert exc_info.value.retriable

    def test_batch_lookup_failure_is_retriable(self):
        manager = MagicMock(spec=ConnectionManager)
        manager.get_connection.side_effect = Exception("server closed the connection")
        handler = IngestionHandler(
            batch_repository=IngestedBatchRepository(manager),
            authorizer=authorize,
            clock=lambda: NOW,
        )

        with pytest.raises(ServerUnavailableError) as exc_info:
            handler.ingest(wire_batch(), token="tok-room-1")

        assert exc_info.value.retriable
        assert handler.event_repository.count() == 0

    def test_failed_invalidation_retried_in_full(self, handler, monkeypatch):
        invalidate = handler.aggregation_cache.invalidate_for_events

        def fail(events):
            raise RepositoryError("connection lost")

        monkeypatch.setattr(handler.aggregation_cache, "invalidate_for_events", fail)
        with pytest.raises(ServerUnavailableError):
            handler.ingest(wire_batch(), token="tok-room-1")

        monkeypatch.setattr(handler.aggregation_cache, "invalidate_for_events", invalidate)
        result = handler.ingest(wire_batch(), token="tok-room-1")

        assert result.success
        assert not result.duplicate_batch
        assert result.stored_count == 0

    def test_no_pii_after_ingestion(self, handler):
        handler.ingest(wire_batch(), token="tok-room-1")

        patterns = [re.compile(p) for p in PII_PATTERNS.values()]
        for event in handler.event_repository.list_older_than(datetime.max):
            for value in event.to_payload().values():
                for text in ([value] if isinstance(value, str) else []):
                    assert not any(p.search(text) for p in patterns)


class TestEndpoints:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.get_json()["service"] == "ingestion-service"

    def test_ready_in_memory(self, client):
        assert client.get("/ready").status_code == 200

    def test_upload_accepted(self, client):
        response = client.post(
            "/v1/batches",
            json=wire_batch(),
            headers={"Authorization": "Bearer tok-room-1"},
        )

        assert response.status_code == 200
        data = response.get_json()
        assert data["batch_id"] == "batch-1"
        assert data["accepted_count"] == 3
        assert data["duplicate_batch"] is False

    def test_upload_rejected(self, client):
        response = client.post(
            "/v1/batches",
            json=wire_batch(events=[wire_event(category="bravery")]),
            headers={"Authorization": "Bearer tok-room-1"},
        )

        assert response.status_code == 400
        assert response.get_json()["reason_code"] == "validation_failed"

    def test_upload_unauthorized(self, client):
        response = client.post("/v1/batches", json=wire_batch())

        assert response.status_code == 401
        assert response.get_json()["reason_code"] == "unauthorized"

    def test_non_json_body(self, client):
        response = client.post(
            "/v1/batches",
            data="not json",
            headers={"Authorization": "Bearer tok-room-1"},
        )

        assert response.status_code == 401

    def test_storage_unavailable(self, client, handler, monkeypatch):
        def fail(events):
            raise RepositoryError("connection lost")

        monkeypatch.setattr(handler.event_repository, "insert_many", fail)

        response = client.post(
            "/v1/batches",
            json=wire_batch(),
            headers={"Authorization": "Bearer tok-room-1"},
        )

        assert response.status_code == 503
        assert response.get_json()["reason_code"] == "server_unavailable"


class TestBuildHandler:

    def test_memory_wiring_shares_event_store(self):
        handler = build_handler(authorizer=authorize)

        assert handler.aggregation_cache.event_repository is handler.event_repository
        assert handler.ready()
        assert handler.ingest(wire_batch(), token="tok-room-1").success

    def test_without_authorizer_fails_closed(self, monkeypatch):
        monkeypatch.delenv("INGEST_REQUIRE_AUTH", raising=False)
        handler = build_handler()

        assert handler.ingest(wire_batch(), token="tok-room-1").reason_code == "unauthorized"

    def test_aggregation_policy_from_env(self, monkeypatch):
        monkeypatch.setenv("AGGREGATION_TTL_MINUTES", "15")
        monkeypatch.setenv("K_ANONYMITY_THRESHOLD", "3")

        handler = build_handler(authorizer=authorize)

        assert handler.aggregation_cache.config.ttl_minutes == 15
        assert handler.aggregation_cache.k_enforcer.k_threshold == 3
