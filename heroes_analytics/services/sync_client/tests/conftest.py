"""Shared fixtures for sync client tests."""
import itertools
from datetime import datetime, timedelta

import pytest

from heroes_analytics.shared.config import SyncConfig
from heroes_analytics.shared.models import BehavioralCategory, InteractionEvent
from heroes_analytics.services.sync_client import BatchRepository, Batcher, EventStore


class FrozenClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 3, 4, 9, 0))


@pytest.fixture
def make_event(clock):
    """Factory for valid captured events with sequential ids and times."""
    counter = itertools.count(1)

    def factory(**overrides):
        n = next(counter)
        fields = dict(
            event_id=f"evt-{n:04d}",
            anonymous_subject_hash=f"{n % 7:x}" * 64,
            classroom_id="room-1",
            lesson_id="lesson-1",
            category=BehavioralCategory.EMPATHY,
            interaction_type="peer_help",
            score=4,
            occurred_at=clock.now - timedelta(hours=1) + timedelta(seconds=n),
            metadata={"engagement_level": "high"},
        )
        fields.update(overrides)
        return InteractionEvent(**fields)

    return factory


@pytest.fixture
def config():
    return SyncConfig(max_batch_size=100, concurrency_limit=2)


@pytest.fixture
def event_store(clock):
    return EventStore(capacity=10000, clock=clock)


@pytest.fixture
def batch_repository():
    return BatchRepository()


@pytest.fixture
def batcher(event_store, batch_repository, config, clock):
    ids = (f"batch-{n}" for n in itertools.count(1))
    return Batcher(
        event_store,
        batch_repository,
        config=config,
        clock=clock,
        id_factory=lambda: next(ids),
    )
