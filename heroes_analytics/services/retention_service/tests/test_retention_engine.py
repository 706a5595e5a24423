"""Tests for the Retention Engine: sweeps, purges and consent withdrawal."""
import itertools
import logging
from datetime import date, datetime, timedelta

import pytest
from unittest.mock import MagicMock

from heroes_analytics.shared.config import RetentionConfig
from heroes_analytics.shared.database import ConnectionManager, RepositoryError
from heroes_analytics.shared.errors import RetentionError, ValidationError
from heroes_analytics.shared.models import (
    AnonymousSaltRecord,
    BehavioralCategory,
    InteractionEvent,
    SyncState,
    WindowStatus,
)
from heroes_analytics.services.analytics_service import CacheKey
from heroes_analytics.services.anonymizer import Anonymizer
from heroes_analytics.services.audit_service import AuditAction
from heroes_analytics.services.ingestion_service import DurableEventRepository
from heroes_analytics.services.retention_service import RetentionEngine

NOW = datetime(2024, 6, 1, 12, 0)
SUBJECT_A = "a" * 64
SUBJECT_B = "b" * 64


def make_event(name, days_old, subject=SUBJECT_A, classroom_id="room-1"):
    return InteractionEvent(
        event_id=name,
        anonymous_subject_hash=subject,
        classroom_id=classroom_id,
        lesson_id="lesson-1",
        category=BehavioralCategory.EMPATHY,
        interaction_type="peer_help",
        score=4,
        occurred_at=NOW - timedelta(days=days_old),
        sync_state=SyncState.SYNCED,
        batch_id="batch-1",
    )


@pytest.fixture
def live():
    return DurableEventRepository(clock=lambda: NOW)


@pytest.fixture
def anonymizer():
    return Anonymizer(clock=lambda: NOW)


@pytest.fixture
def engine(live, anonymizer):
    ids = itertools.count(1)
    return RetentionEngine(
        live,
        anonymizer=anonymizer,
        clock=lambda: NOW,
        id_factory=lambda: f"ret-{next(ids)}",
    )


@pytest.fixture
def seeded(live):
    live.insert_many([
        make_event("old-1", 100),
        make_event("old-2", 95, subject=SUBJECT_B),
        make_event("old-3", 91, classroom_id="room-2"),
        make_event("recent-1", 89),
        make_event("recent-2", 10, subject=SUBJECT_B),
    ])
    return live


def ids(events):
    return sorted(e.event_id for e in events)


class TestRetentionSweep:

    def test_archives_then_deletes_old_rows(self, engine, seeded):
        summary = engine.run_retention_sweep()

        assert summary.archived == 3
        assert summary.deleted == 3
        assert ids(seeded.list_older_than(datetime.max)) == ["recent-1", "recent-2"]
        assert ids(engine.archive_repository.list_older_than(datetime.max)) == [
            "old-1", "old-2", "old-3",
        ]

    def test_no_live_rows_older_than_policy(self, engine, seeded):
        engine.run_retention_sweep(policy_days=30)

        assert seeded.list_older_than(NOW - timedelta(days=30)) == []
        assert ids(seeded.list_older_than(datetime.max)) == ["recent-2"]

    def test_row_exactly_at_horizon_kept(self, engine, live):
        live.insert_many([make_event("edge", 90)])

        assert engine.run_retention_sweep().deleted == 0

    def test_second_sweep_is_noop(self, engine, seeded):
        engine.run_retention_sweep()

        second = engine.run_retention_sweep()

        assert (second.archived, second.deleted) == (0, 0)
        assert engine.archive_repository.count() == 3
        assert seeded.count() == 2

    def test_writes_log_entry(self, engine, seeded):
        summary = engine.run_retention_sweep()

        entry = summary.log_entry
        assert entry.entry_id == "ret-1"
        assert entry.table_name == "interaction_events"
        assert entry.policy_days == 90
        assert entry.records_archived == 3
        assert entry.records_deleted == 3
        assert entry.executed_at == NOW
        assert entry.duration_ms >= 0
        assert engine.log_repository.list_recent() == [entry]

    def test_policy_from_config(self, live, anonymizer, seeded):
        engine = RetentionEngine(
            live, anonymizer=anonymizer, config=RetentionConfig(policy_days=5), clock=lambda: NOW
        )

        assert engine.run_retention_sweep().deleted == 5

    @pytest.mark.parametrize("policy_days", [0, -3, "90", True])
    def test_invalid_policy_rejected(self, engine, seeded, policy_days):
        with pytest.raises(ValidationError):
            engine.run_retention_sweep(policy_days)

        assert seeded.count() == 5

    def test_archive_failure_leaves_live_untouched(self, engine, seeded, monkeypatch):
        def fail(events):
            raise RepositoryError("archive unreachable")

        monkeypatch.setattr(engine.archive_repository, "insert_many", fail)

        with pytest.raises(RetentionError) as exc_info:
            engine.run_retention_sweep()

        assert exc_info.value.reason_code == "retention_failed"
        assert seeded.count() == 5
        assert engine.log_repository.count() == 0

    def test_unreachable_live_store_aborts_sweep(self, anonymizer, caplog):
        manager = MagicMock(spec=ConnectionManager)
        manager.get_connection.side_effect = Exception("server closed the connection")
        engine = RetentionEngine(
            DurableEventRepository(manager, clock=lambda: NOW),
            anonymizer=anonymizer,
            clock=lambda: NOW,
        )

        with caplog.at_level(logging.ERROR):
            with pytest.raises(RetentionError) as exc_info:
                engine.run_retention_sweep()

        assert exc_info.value.reason_code == "retention_failed"
        assert "RETENTION_SWEEP_ABORTED" in caplog.messages
        assert engine.log_repository.count() == 0

    def test_unverified_archive_leaves_live_untouched(self, engine, seeded, monkeypatch):
        monkeypatch.setattr(engine.archive_repository, "existing_ids", lambda event_ids: [])

        with pytest.raises(RetentionError) as exc_info:
            engine.run_retention_sweep()

        assert exc_info.value.details["missing_count"] == 3
        assert seeded.count() == 5

    def test_rerun_after_crash_between_copy_and_delete(self, engine, seeded):
        engine.archive_repository.insert_many(seeded.list_older_than(NOW - timedelta(days=90)))

        summary = engine.run_retention_sweep()

        assert summary.archived == 3
        assert summary.deleted == 3
        assert engine.archive_repository.count() == 3

    def test_expires_overlapping_windows(self, engine, seeded):
        day = (NOW - timedelta(days=100)).date()
        key = CacheKey.for_day("room-1", "empathy", "daily", day)
        assert engine.aggregation_cache.get_or_compute(key).record_count == 1

        engine.run_retention_sweep()

        stored = engine.aggregation_cache.window_repository.get(key.to_string())
        assert stored.status == WindowStatus.EXPIRED
        assert engine.aggregation_cache.get_or_compute(key).record_count == 0

    def test_deletes_expired_salts(self, engine, anonymizer, seeded):
        anonymizer.salt_repository.save(
            AnonymousSaltRecord(salt_date=date(2024, 5, 1), salt_value="f" * 64)
        )
        anonymizer.hash("student-7")

        summary = engine.run_retention_sweep()

        assert summary.salts_deleted == 1
        assert anonymizer.salt_repository.list_dates() == [NOW.date()]
        rotated = engine.audit_logger.query(action=AuditAction.SALTS_ROTATED)
        assert rotated[0].details["salts_deleted"] == 1

    def test_audited(self, engine, seeded):
        engine.run_retention_sweep()

        entries = engine.audit_logger.query(action=AuditAction.RETENTION_SWEEP)
        assert entries[0].entity_id == "ret-1"
        assert entries[0].details["records_deleted"] == 3
        assert engine.audit_logger.query(action=AuditAction.SALTS_ROTATED) == []


class TestPurgeSubject:

    def test_removes_live_and_archived_rows(self, engine, seeded):
        engine.run_retention_sweep()

        result = engine.purge_subject(SUBJECT_A)

        assert result.live_deleted == 1
        assert result.archive_deleted == 2
        assert result.complete
        assert seeded.count_subject(SUBJECT_A) == 0
        assert engine.archive_repository.count_subject(SUBJECT_A) == 0

    def test_other_subjects_untouched(self, engine, seeded):
        engine.purge_subject(SUBJECT_A)

        assert ids(seeded.list_older_than(datetime.max)) == ["old-2", "recent-2"]

    def test_unknown_subject_is_complete(self, engine, seeded):
        result = engine.purge_subject("c" * 64)

        assert result.complete
        assert (result.live_deleted, result.archive_deleted) == (0, 0)

    @pytest.mark.parametrize("value", ["", "A" * 64, "a" * 63, None])
    def test_malformed_hash_rejected(self, engine, value):
        with pytest.raises(ValidationError):
            engine.purge_subject(value)

    def test_reports_incomplete_purge(self, engine, seeded, monkeypatch):
        engine.run_retention_sweep()
        monkeypatch.setattr(engine.archive_repository, "delete_subject", lambda h: 0)

        result = engine.purge_subject(SUBJECT_A)

        assert not result.complete
        assert result.remaining == 2

    def test_expires_classroom_windows(self, engine, seeded):
        key = CacheKey.for_day("room-1", "empathy", "weekly", (NOW - timedelta(days=10)).date())
        engine.aggregation_cache.get_or_compute(key)

        engine.purge_subject(SUBJECT_A)

        assert engine.aggregation_cache.window_repository.list_active("room-1") == []

    def test_audit_does_not_store_hash(self, engine, seeded):
        engine.purge_subject(SUBJECT_A)

        entry = engine.audit_logger.query(action=AuditAction.SUBJECT_PURGED)[0]
        assert entry.entity_id != SUBJECT_A
        assert SUBJECT_A not in str(entry.details)
        assert entry.details["complete"] is True


class TestWithdrawConsent:

    def test_purges_every_retained_day(self, engine, anonymizer, live):
        today = NOW.date()
        earlier = today - timedelta(days=3)
        live.insert_many([
            make_event("today", 0, subject=anonymizer.hash("student-42", today)),
            make_event("earlier", 3, subject=anonymizer.hash("student-42", earlier)),
            make_event("other", 0, subject=anonymizer.hash("student-7", today)),
        ])

        assert engine.withdraw_consent(" Student-42 ") is True

        assert ids(live.list_older_than(datetime.max)) == ["other"]

    def test_creates_no_salts(self, engine, anonymizer):
        assert engine.withdraw_consent("student-42") is True
        assert anonymizer.salt_repository.list_dates() == []

    def test_incomplete_purge_reported(self, engine, anonymizer, live, monkeypatch):
        live.insert_many([make_event("today", 0, subject=anonymizer.hash("student-42"))])
        monkeypatch.setattr(live, "delete_subject", lambda h: 0)

        assert engine.withdraw_consent("student-42") is False

    def test_empty_identifier_rejected(self, engine):
        with pytest.raises(ValidationError):
            engine.withdraw_consent("   ")

    def test_audited_without_identifier(self, engine, anonymizer, live):
        live.insert_many([make_event("today", 0, subject=anonymizer.hash("student-42"))])

        engine.withdraw_consent("student-42")

        entry = engine.audit_logger.query(action=AuditAction.CONSENT_WITHDRAWN)[0]
        assert entry.details == {"salt_days": 1, "rows_deleted": 1, "complete": True}
        assert "student-42" not in str(entry.to_dict())
