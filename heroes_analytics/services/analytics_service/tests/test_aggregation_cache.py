"""Tests for the aggregation cache and cache keys."""
import threading
import time
from datetime import date, datetime, timedelta

import pytest

from heroes_analytics.shared.config import AggregationConfig
from heroes_analytics.shared.models import (
    AggregationLevel,
    BehavioralCategory,
    InteractionEvent,
    SyncState,
    WindowStatus,
)
from heroes_analytics.services.analytics_service import AggregationCache, CacheKey, summarize
from heroes_analytics.services.ingestion_service import DurableEventRepository

DAY = date(2024, 3, 4)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class CountingEventRepository(DurableEventRepository):
    """Counts range reads; optionally slows them down."""

    def __init__(self, delay=0.0, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay
        self.reads = 0
        self._reads_lock = threading.Lock()

    def list_in_range(self, *args, **kwargs):
        with self._reads_lock:
            self.reads += 1
        if self.delay:
            time.sleep(self.delay)
        return super().list_in_range(*args, **kwargs)


def make_event(n, subject=None, classroom_id="room-1", day=DAY, score=4,
               category=BehavioralCategory.EMPATHY, interaction_type="peer_help"):
    return InteractionEvent(
        event_id=f"{classroom_id}-evt-{n}",
        anonymous_subject_hash=f"{(subject if subject is not None else n) % 16:x}" * 64,
        classroom_id=classroom_id,
        lesson_id="lesson-1",
        category=category,
        interaction_type=interaction_type,
        score=score,
        occurred_at=datetime.combine(day, datetime.min.time()) + timedelta(hours=10),
        sync_state=SyncState.SYNCED,
        batch_id="batch-1",
    )


@pytest.fixture
def clock():
    return Clock(datetime(2024, 3, 5, 12, 0))


@pytest.fixture
def events():
    return CountingEventRepository()


@pytest.fixture
def cache(events, clock):
    return AggregationCache(events, clock=clock)


def daily_key(classroom_id="room-1", day=DAY):
    return CacheKey.for_day(classroom_id, "empathy", "daily", day)


class TestCacheKey:

    def test_weekly_key_starts_on_monday(self):
        key = CacheKey.for_day("room-1", "empathy", "weekly", date(2024, 3, 6))

        assert key.bucket_start == date(2024, 3, 4)
        assert key.to_string() == "room-1:empathy:weekly:2024-03-04"

    def test_monthly_bounds(self):
        key = CacheKey.for_day("room-1", "leadership", "monthly", date(2024, 12, 17))

        assert key.bounds() == (datetime(2024, 12, 1), datetime(2025, 1, 1))

    def test_parse_round_trip(self):
        key = daily_key()

        assert CacheKey.parse(key.to_string()) == key

    def test_parse_classroom_with_colons(self):
        key = CacheKey.parse("district:7:room-1:empathy:daily:2024-03-04")

        assert key.classroom_id == "district:7:room-1"
        assert key.level == AggregationLevel.DAILY

    def test_parse_normalizes_to_bucket_start(self):
        key = CacheKey.parse("room-1:empathy:monthly:2024-03-19")

        assert key.bucket_start == date(2024, 3, 1)

    @pytest.mark.parametrize("value", [
        "room-1:empathy:daily",
        ":empathy:daily:2024-03-04",
        "room-1:bravery:daily:2024-03-04",
        "room-1:empathy:hourly:2024-03-04",
        "room-1:empathy:daily:March",
    ])
    def test_malformed_keys_rejected(self, value):
        with pytest.raises(ValueError):
            CacheKey.parse(value)


class TestSummarize:

    def test_rollup_fields(self):
        rollup = summarize([
            make_event(1, score=5),
            make_event(2, score=4, interaction_type="conflict_resolution"),
            make_event(3, subject=1, score=4),
        ])

        assert rollup["event_count"] == 3
        assert rollup["distinct_subjects"] == 2
        assert rollup["average_score"] == 4.33
        assert rollup["score_distribution"] == {"1": 0, "2": 0, "3": 0, "4": 2, "5": 1}
        assert rollup["interaction_counts"] == {"conflict_resolution": 1, "peer_help": 2}

    def test_empty(self):
        rollup = summarize([])

        assert rollup["event_count"] == 0
        assert rollup["average_score"] is None


class TestGetOrCompute:

    def test_computes_and_stores(self, cache, events, clock):
        events.insert_many([make_event(n) for n in range(6)])

        window = cache.get_or_compute(daily_key())

        assert window.record_count == 6
        assert window.status == WindowStatus.ACTIVE
        assert window.window_start == datetime(2024, 3, 4)
        assert window.window_end == datetime(2024, 3, 5)
        assert window.expires_at == clock.now + timedelta(minutes=60)
        assert window.payload["suppressed"] is False
        assert window.payload["average_score"] == 4.0

    def test_string_key_accepted(self, cache, events):
        events.insert_many([make_event(1)])

        window = cache.get_or_compute("room-1:empathy:daily:2024-03-04")

        assert window.cache_key == "room-1:empathy:daily:2024-03-04"

    def test_fresh_window_served_without_recompute(self, cache, events, clock):
        events.insert_many([make_event(1)])
        first = cache.get_or_compute(daily_key())
        clock.advance(minutes=59)

        second = cache.get_or_compute(daily_key())

        assert events.reads == 1
        assert second.computed_at == first.computed_at

    def test_expired_by_ttl_recomputed(self, cache, events, clock):
        cache.get_or_compute(daily_key())
        events.insert_many([make_event(1)])
        clock.advance(minutes=60)

        window = cache.get_or_compute(daily_key())

        assert events.reads == 2
        assert window.record_count == 1

    def test_force_recomputes(self, cache, events, clock):
        cache.get_or_compute(daily_key())
        events.insert_many([make_event(1)])

        window = cache.get_or_compute(daily_key(), force=True)

        assert events.reads == 2
        assert window.record_count == 1

    def test_custom_ttl(self, events, clock):
        cache = AggregationCache(events, config=AggregationConfig(ttl_minutes=5), clock=clock)
        cache.get_or_compute(daily_key())
        clock.advance(minutes=5)

        cache.get_or_compute(daily_key())

        assert events.reads == 2

    def test_only_matching_classroom_and_category_counted(self, cache, events):
        events.insert_many([
            make_event(1),
            make_event(2, classroom_id="room-2"),
            make_event(3, category=BehavioralCategory.CONFIDENCE),
            make_event(4, day=DAY + timedelta(days=1)),
        ])

        assert cache.get_or_compute(daily_key()).record_count == 1

    def test_concurrent_readers_share_one_computation(self, clock):
        slow = CountingEventRepository(delay=0.05)
        cache = AggregationCache(slow, clock=clock)
        results = []

        def read():
            results.append(cache.get_or_compute(daily_key()))

        threads = [threading.Thread(target=read) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert slow.reads == 1
        assert len({w.computed_at for w in results}) == 1


class TestKAnonymity:

    def test_fewer_than_five_subjects_suppressed(self, cache, events):
        events.insert_many([make_event(n, subject=n % 4) for n in range(8)])

        payload = cache.get_or_compute(daily_key()).payload

        assert payload["suppressed"] is True
        assert payload["event_count"] == 8
        assert payload["distinct_subjects"] == 4
        assert payload["average_score"] is None
        assert payload["score_distribution"] is None

    def test_five_subjects_published(self, cache, events):
        events.insert_many([make_event(n) for n in range(5)])

        payload = cache.get_or_compute(daily_key()).payload

        assert payload["suppressed"] is False
        assert payload["score_distribution"]["4"] == 5

    def test_threshold_from_config(self, events, clock):
        cache = AggregationCache(
            events, config=AggregationConfig(k_anonymity_threshold=2), clock=clock
        )
        events.insert_many([make_event(1), make_event(2)])

        assert cache.get_or_compute(daily_key()).payload["suppressed"] is False


class TestInvalidation:

    @pytest.fixture
    def warmed(self, cache):
        for classroom_id in ("room-1", "room-2"):
            for day in (DAY, DAY + timedelta(days=1)):
                cache.get_or_compute(daily_key(classroom_id, day))
        return cache

    def status(self, cache, classroom_id, day):
        key = daily_key(classroom_id, day).to_string()
        return cache.window_repository.get(key).status

    def test_new_events_expire_covering_window_only(self, warmed, events):
        expired = warmed.invalidate_for_events([make_event(9)])

        assert expired == 1
        assert self.status(warmed, "room-1", DAY) == WindowStatus.EXPIRED
        assert self.status(warmed, "room-1", DAY + timedelta(days=1)) == WindowStatus.ACTIVE
        assert self.status(warmed, "room-2", DAY) == WindowStatus.ACTIVE

    def test_other_category_untouched(self, warmed):
        event = make_event(9, category=BehavioralCategory.CONFIDENCE)

        assert warmed.invalidate_for_events([event]) == 0

    def test_next_read_reflects_new_events(self, warmed, events):
        event = make_event(9)
        events.insert_many([event])
        warmed.invalidate_for_events([event])

        assert warmed.get_or_compute(daily_key()).record_count == 1

    def test_range_all_classrooms(self, warmed):
        expired = warmed.invalidate_range(datetime(2024, 3, 4), datetime(2024, 3, 4, 23, 59))

        assert expired == 2
        assert self.status(warmed, "room-2", DAY) == WindowStatus.EXPIRED
        assert self.status(warmed, "room-2", DAY + timedelta(days=1)) == WindowStatus.ACTIVE

    def test_range_limited_to_classrooms(self, warmed):
        expired = warmed.invalidate_range(
            datetime(2024, 3, 1), datetime(2024, 3, 10), classroom_ids=["room-2"]
        )

        assert expired == 2
        assert self.status(warmed, "room-1", DAY) == WindowStatus.ACTIVE

    def test_classrooms(self, warmed):
        assert warmed.invalidate_classrooms(["room-1", "room-1"]) == 2
        assert warmed.window_repository.list_active() == warmed.window_repository.list_active("room-2")

    def test_expire_stale(self, warmed, clock):
        assert warmed.expire_stale() == 0

        clock.advance(minutes=61)

        assert warmed.expire_stale() == 4
        assert warmed.window_repository.list_active() == []

    def test_invalidation_during_recompute_not_masked(self, clock):
        class IngestingMidRead(CountingEventRepository):
            """Lands a new event, and its invalidation, after the first read."""

            def list_in_range(self, *args, **kwargs):
                rows = super().list_in_range(*args, **kwargs)
                if self.reads == 1:
                    late = make_event(99)
                    self.insert_many([late])
                    cache.invalidate_for_events([late])
                return rows

        events = IngestingMidRead()
        events.insert_many([make_event(1)])
        cache = AggregationCache(events, clock=clock)

        first = cache.get_or_compute(daily_key())
        stored = cache.window_repository.get(daily_key().to_string())
        second = cache.get_or_compute(daily_key())

        assert first.record_count == 1
        assert stored.status == WindowStatus.EXPIRED
        assert second.record_count == 2
        assert events.reads == 2
