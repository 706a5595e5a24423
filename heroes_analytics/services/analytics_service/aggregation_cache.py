"""Aggregation Cache - serves per-classroom rollups with a bounded staleness.

A window is keyed by classroom, category, aggregation level and bucket
start. Reads serve the stored window while it is active and unexpired;
otherwise the window is recomputed synchronously from the durable event
store. New data, retention sweeps and purges expire overlapping windows.
"""
import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from heroes_analytics.shared.config import AggregationConfig
from heroes_analytics.shared.models import (
    AggregationLevel,
    AggregationWindow,
    BehavioralCategory,
    InteractionEvent,
    WindowStatus,
)
from .k_anonymity import KAnonymityEnforcer
from .window_repository import WindowRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheKey:
    """Identifies one aggregation window.

    ``bucket_start`` is always the first day of the bucket for ``level``;
    use ``for_day`` to build a key from any day inside the bucket.
    """
    classroom_id: str
    category: BehavioralCategory
    level: AggregationLevel
    bucket_start: date

    @classmethod
    def for_day(
        cls,
        classroom_id: str,
        category: Union[BehavioralCategory, str],
        level: Union[AggregationLevel, str],
        day: date,
    ) -> "CacheKey":
        level = AggregationLevel(level)
        start, _ = level.bucket_bounds(day)
        return cls(classroom_id, BehavioralCategory(category), level, start.date())

    def bounds(self) -> Tuple[datetime, datetime]:
        return self.level.bucket_bounds(self.bucket_start)

    def to_string(self) -> str:
        return ":".join([
            self.classroom_id,
            self.category.value,
            self.level.value,
            self.bucket_start.isoformat(),
        ])

    @classmethod
    def parse(cls, value: str) -> "CacheKey":
        """Parse ``classroom:category:level:YYYY-MM-DD``.

        Raises:
            ValueError: If the key is malformed
        """
        parts = value.rsplit(":", 3)
        if len(parts) != 4 or not parts[0]:
            raise ValueError(f"Malformed cache key: {value!r}")
        classroom_id, category, level, day = parts
        return cls.for_day(classroom_id, category, level, date.fromisoformat(day))


class AggregationCache:
    """Read-through cache of AggregationWindows."""

    def __init__(
        self,
        event_repository,
        window_repository: Optional[WindowRepository] = None,
        config: Optional[AggregationConfig] = None,
        k_enforcer: Optional[KAnonymityEnforcer] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize cache.

        Args:
            event_repository: Durable event store providing
                ``list_in_range(start, end, classroom_id=, category=)``
            window_repository: Window storage (in-memory if not given)
            config: TTL and k-anonymity policy
            k_enforcer: K-anonymity enforcer (injected for testing)
            clock: Returns the current UTC time (injected for testing)
        """
        self.event_repository = event_repository
        self.window_repository = window_repository or WindowRepository()
        self.config = config or AggregationConfig()
        self.k_enforcer = k_enforcer or KAnonymityEnforcer(self.config.k_anonymity_threshold)
        self._clock = clock or datetime.utcnow
        self._key_locks: Dict[str, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()
        # Bumped by every data-driven invalidation
        self._generation = 0
        self._generation_lock = threading.Lock()

        logger.info(
            "AGGREGATION_CACHE_INITIALIZED",
            extra={
                "ttl_minutes": self.config.ttl_minutes,
                "k_threshold": self.k_enforcer.k_threshold,
            }
        )

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self.config.ttl_minutes)

    def _lock_for(self, key: str) -> threading.Lock:
        with self._key_locks_guard:
            return self._key_locks.setdefault(key, threading.Lock())

    @property
    def generation(self) -> int:
        with self._generation_lock:
            return self._generation

    def _bump_generation(self) -> None:
        with self._generation_lock:
            self._generation += 1

    def get_or_compute(
        self,
        cache_key: Union[CacheKey, str],
        force: bool = False,
    ) -> AggregationWindow:
        """Return a fresh window, recomputing it if absent, expired or forced.

        Concurrent callers for the same key wait for one recomputation and
        then share its result. A window whose computation overlapped an
        invalidation is returned but stored as expired, so the next read
        recomputes it instead of serving rows read before the new data.

        Args:
            cache_key: CacheKey or its string form
            force: Recompute even if a fresh window is stored

        Returns:
            AggregationWindow no older than the TTL

        Raises:
            ValueError: If a string key is malformed

        Logs:
            - AGGREGATION_WINDOW_COMPUTED: After a recomputation
            - AGGREGATION_WINDOW_SUPERSEDED: When an invalidation ran mid-computation
        """
        key = cache_key if isinstance(cache_key, CacheKey) else CacheKey.parse(cache_key)
        key_string = key.to_string()
        requested_at = self._clock()

        with self._lock_for(key_string):
            stored = self.window_repository.find_by_id(key_string)
            if stored is not None and stored.is_fresh(self._clock()):
                if not force or stored.computed_at > requested_at:
                    logger.debug("AGGREGATION_CACHE_HIT", extra={"cache_key": key_string})
                    return stored

            generation = self.generation
            window = self._compute(key, key_string)
            self.window_repository.save(window)
            # Checked after the save: a later bump is followed by its own expire
            if self.generation != generation:
                window = replace(window, status=WindowStatus.EXPIRED)
                self.window_repository.save(window)
                logger.info("AGGREGATION_WINDOW_SUPERSEDED", extra={"cache_key": key_string})

        logger.info(
            "AGGREGATION_WINDOW_COMPUTED",
            extra={
                "cache_key": key_string,
                "record_count": window.record_count,
                "suppressed": window.payload.get("suppressed"),
                "computation_time_ms": round(window.computation_time_ms, 2),
            }
        )
        return window

    def _compute(self, key: CacheKey, key_string: str) -> AggregationWindow:
        started = time.perf_counter()
        start, end = key.bounds()
        events = self.event_repository.list_in_range(
            start, end, classroom_id=key.classroom_id, category=key.category
        )
        payload = self.k_enforcer.apply_to_payload(
            summarize(events), context=key_string
        )
        now = self._clock()

        return AggregationWindow(
            cache_key=key_string,
            classroom_id=key.classroom_id,
            category=key.category,
            level=key.level,
            window_start=start,
            window_end=end,
            payload=payload,
            computed_at=now,
            expires_at=now + self.ttl,
            status=WindowStatus.ACTIVE,
            record_count=len(events),
            computation_time_ms=(time.perf_counter() - started) * 1000,
        )

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate_for_events(self, events: Iterable[InteractionEvent]) -> int:
        """Expire windows of the same classroom and category covering any event.

        Returns:
            Number of windows expired
        """
        spans: Dict[Tuple[str, BehavioralCategory], List[datetime]] = {}
        for event in events:
            span = spans.setdefault((event.classroom_id, event.category), [])
            span.append(event.occurred_at)

        self._bump_generation()
        expired = 0
        for (classroom_id, category), times in spans.items():
            expired += self.window_repository.expire_overlapping(
                min(times), max(times), classroom_ids=[classroom_id], category=category
            )
        self._log_invalidation("events", expired, classrooms=len({c for c, _ in spans}))
        return expired

    def invalidate_range(
        self,
        start: datetime,
        end: datetime,
        classroom_ids: Optional[Sequence[str]] = None,
    ) -> int:
        """Expire windows intersecting [start, end]."""
        self._bump_generation()
        expired = self.window_repository.expire_overlapping(start, end, classroom_ids=classroom_ids)
        self._log_invalidation("range", expired)
        return expired

    def invalidate_classrooms(self, classroom_ids: Iterable[str]) -> int:
        """Expire every window of the given classrooms."""
        self._bump_generation()
        expired = self.window_repository.expire_classrooms(sorted(set(classroom_ids)))
        self._log_invalidation("classrooms", expired)
        return expired

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Mark windows past their ``expires_at`` as expired."""
        expired = self.window_repository.expire_stale(now or self._clock())
        self._log_invalidation("ttl", expired)
        return expired

    @staticmethod
    def _log_invalidation(trigger: str, expired: int, **extra: Any) -> None:
        logger.info(
            "AGGREGATION_WINDOWS_INVALIDATED",
            extra={"trigger": trigger, "expired": expired, **extra}
        )


def summarize(events: Sequence[InteractionEvent]) -> Dict[str, Any]:
    """Raw rollup of a window's events, before k-anonymity is applied."""
    scores = [e.score for e in events]
    distribution = Counter(scores)
    return {
        "event_count": len(events),
        "distinct_subjects": len({e.anonymous_subject_hash for e in events}),
        "average_score": round(sum(scores) / len(scores), 2) if scores else None,
        "score_distribution": {str(s): distribution.get(s, 0) for s in range(1, 6)},
        "interaction_counts": dict(sorted(Counter(e.interaction_type for e in events).items())),
    }
