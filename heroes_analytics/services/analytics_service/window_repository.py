"""Repository for cached aggregation windows."""
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from psycopg2.extras import Json

from heroes_analytics.shared.database import BaseRepository, ConnectionManager
from heroes_analytics.shared.models import (
    AggregationLevel,
    AggregationWindow,
    BehavioralCategory,
    WindowStatus,
)

logger = logging.getLogger(__name__)


class WindowRepository(BaseRepository[AggregationWindow]):
    """Stores one row per cache key in ``analytics_aggregation_cache``.

    Expiry is a status flip, never a delete, so invalidation is cheap and
    concurrent readers see either the old row or the expired one.
    """

    id_column = "cache_key"

    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        super().__init__(connection_manager, "analytics_aggregation_cache")

    def _row_to_entity(self, row: tuple) -> AggregationWindow:
        return AggregationWindow(
            cache_key=row[0],
            classroom_id=row[1],
            category=BehavioralCategory(row[2]),
            level=AggregationLevel(row[3]),
            window_start=row[4],
            window_end=row[5],
            payload=row[6] or {},
            computed_at=row[7],
            expires_at=row[8],
            status=WindowStatus(row[9]),
            record_count=row[10],
            computation_time_ms=float(row[11]),
        )

    def _entity_to_params(self, entity: AggregationWindow) -> Dict[str, Any]:
        return {
            "cache_key": entity.cache_key,
            "classroom_id": entity.classroom_id,
            "category": entity.category.value,
            "aggregation_level": entity.level.value,
            "window_start": entity.window_start,
            "window_end": entity.window_end,
            "payload": Json(entity.payload),
            "computed_at": entity.computed_at,
            "expires_at": entity.expires_at,
            "cache_status": entity.status.value,
            "record_count": entity.record_count,
            "computation_time_ms": entity.computation_time_ms,
        }

    def _entity_id(self, entity: AggregationWindow) -> str:
        return entity.cache_key

    def expire_overlapping(
        self,
        start: datetime,
        end: datetime,
        classroom_ids: Optional[Sequence[str]] = None,
        category: Optional[BehavioralCategory] = None,
    ) -> int:
        """Expire active windows intersecting [start, end].

        Args:
            start: Range start (inclusive)
            end: Range end (inclusive)
            classroom_ids: Restrict to these classrooms (all if None)
            category: Restrict to one category (all if None)

        Returns:
            Number of windows expired
        """
        if not self.uses_database:
            return self._expire_memory(
                lambda w: w.overlaps(start, end)
                and (classroom_ids is None or w.classroom_id in classroom_ids)
                and (category is None or w.category == category)
            )

        query = (
            "UPDATE analytics_aggregation_cache SET cache_status = %s "
            "WHERE cache_status = %s AND window_start <= %s AND window_end > %s"
        )
        params: List[Any] = [
            WindowStatus.EXPIRED.value, WindowStatus.ACTIVE.value, end, start,
        ]
        if classroom_ids is not None:
            query += " AND classroom_id = ANY(%s)"
            params.append(list(classroom_ids))
        if category is not None:
            query += " AND category = %s"
            params.append(category.value)
        return self._execute(query, params)

    def expire_classrooms(self, classroom_ids: Sequence[str]) -> int:
        """Expire every active window of the given classrooms."""
        ids = list(classroom_ids)
        if not ids:
            return 0
        if not self.uses_database:
            return self._expire_memory(lambda w: w.classroom_id in ids)

        return self._execute(
            "UPDATE analytics_aggregation_cache SET cache_status = %s "
            "WHERE cache_status = %s AND classroom_id = ANY(%s)",
            (WindowStatus.EXPIRED.value, WindowStatus.ACTIVE.value, ids),
        )

    def expire_stale(self, now: datetime) -> int:
        """Flip active windows past ``expires_at`` to expired."""
        if not self.uses_database:
            return self._expire_memory(lambda w: w.expires_at <= now)

        return self._execute(
            "UPDATE analytics_aggregation_cache SET cache_status = %s "
            "WHERE cache_status = %s AND expires_at <= %s",
            (WindowStatus.EXPIRED.value, WindowStatus.ACTIVE.value, now),
        )

    def list_active(self, classroom_id: Optional[str] = None) -> List[AggregationWindow]:
        if not self.uses_database:
            with self._lock:
                windows = list(self._memory.values())
            return sorted(
                (
                    w for w in windows
                    if w.status == WindowStatus.ACTIVE
                    and (classroom_id is None or w.classroom_id == classroom_id)
                ),
                key=lambda w: (w.window_start, w.cache_key),
            )

        query = "SELECT * FROM analytics_aggregation_cache WHERE cache_status = %s"
        params: List[Any] = [WindowStatus.ACTIVE.value]
        if classroom_id is not None:
            query += " AND classroom_id = %s"
            params.append(classroom_id)
        return self._fetchall(query + " ORDER BY window_start, cache_key", params)

    def _expire_memory(self, predicate) -> int:
        expired = 0
        with self._lock:
            for key, window in list(self._memory.items()):
                if window.status == WindowStatus.ACTIVE and predicate(window):
                    self._memory[key] = replace(window, status=WindowStatus.EXPIRED)
                    expired += 1
        return expired
