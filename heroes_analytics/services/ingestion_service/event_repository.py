"""Durable Store repositories for ingested events and batches.

``interaction_events`` is shared by every classroom. Writes rely on the
``event_id`` primary key (``ON CONFLICT DO NOTHING``) so concurrent or
repeated deliveries of the same event never create a second row.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from psycopg2.extras import Json

from heroes_analytics.shared.database import BaseRepository, ConnectionManager, RepositoryError
from heroes_analytics.shared.models import BehavioralCategory, InteractionEvent, SyncState

logger = logging.getLogger(__name__)


class DurableEventRepository(BaseRepository[InteractionEvent]):
    """Server-side event table.

    Column order: the event fields, ``batch_id`` and a write timestamp
    (``ingested_at`` here, ``archived_at`` in the archive subclass).
    """

    id_column = "event_id"
    stamp_column = "ingested_at"

    def __init__(
        self,
        connection_manager: Optional[ConnectionManager] = None,
        table_name: str = "interaction_events",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        super().__init__(connection_manager, table_name)
        self._clock = clock or datetime.utcnow

    def _row_to_entity(self, row: tuple) -> InteractionEvent:
        return InteractionEvent(
            event_id=row[0],
            anonymous_subject_hash=row[1].strip(),
            classroom_id=row[2],
            lesson_id=row[3],
            category=BehavioralCategory(row[4]),
            interaction_type=row[5],
            score=row[6],
            occurred_at=row[7],
            metadata=row[8] or {},
            sync_state=SyncState.SYNCED,
            batch_id=row[9],
        )

    def _entity_to_params(self, entity: InteractionEvent) -> Dict[str, Any]:
        return {
            "event_id": entity.event_id,
            "anonymous_subject_hash": entity.anonymous_subject_hash,
            "classroom_id": entity.classroom_id,
            "lesson_id": entity.lesson_id,
            "category": entity.category.value,
            "interaction_type": entity.interaction_type,
            "score": entity.score,
            "occurred_at": entity.occurred_at,
            "metadata": Json(entity.metadata),
            "batch_id": entity.batch_id,
            self.stamp_column: self._clock(),
        }

    def _entity_id(self, entity: InteractionEvent) -> str:
        return entity.event_id

    def insert_many(self, events: Sequence[InteractionEvent]) -> int:
        """Insert events, skipping any whose event_id is already stored.

        All rows are written in one transaction.

        Returns:
            Number of rows actually inserted

        Raises:
            RepositoryError: If the write fails (nothing is stored)
        """
        if not events:
            return 0

        if not self.uses_database:
            inserted = 0
            with self._lock:
                for event in events:
                    if event.event_id not in self._memory:
                        self._memory[event.event_id] = event
                        inserted += 1
            return inserted

        columns = list(self._entity_to_params(events[0]).keys())
        query = (
            f"INSERT INTO {self.table_name} ({', '.join(columns)}) "
            f"VALUES ({', '.join(['%s'] * len(columns))}) "
            f"ON CONFLICT ({self.id_column}) DO NOTHING"
        )
        inserted = 0
        try:
            with self.connection_manager.transaction() as cur:
                for event in events:
                    cur.execute(query, tuple(self._entity_to_params(event).values()))
                    inserted += cur.rowcount
        except Exception as e:
            logger.error(
                "EVENT_INSERT_FAILED",
                extra={"table_name": self.table_name, "error": str(e)}
            )
            raise RepositoryError(f"Insert into {self.table_name} failed: {e}") from e
        return inserted

    def list_in_range(
        self,
        start: datetime,
        end: datetime,
        classroom_id: Optional[str] = None,
        category: Optional[BehavioralCategory] = None,
    ) -> List[InteractionEvent]:
        """Events with ``start <= occurred_at < end``, oldest first."""
        if not self.uses_database:
            return self._select_memory(
                lambda e: start <= e.occurred_at < end
                and (classroom_id is None or e.classroom_id == classroom_id)
                and (category is None or e.category == category)
            )

        query = f"SELECT * FROM {self.table_name} WHERE occurred_at >= %s AND occurred_at < %s"
        params: List[Any] = [start, end]
        if classroom_id is not None:
            query += " AND classroom_id = %s"
            params.append(classroom_id)
        if category is not None:
            query += " AND category = %s"
            params.append(category.value)
        return self._fetchall(query + " ORDER BY occurred_at, event_id", params)

    def list_older_than(self, cutoff: datetime) -> List[InteractionEvent]:
        """Events with ``occurred_at < cutoff``, oldest first."""
        if not self.uses_database:
            return self._select_memory(lambda e: e.occurred_at < cutoff)

        return self._fetchall(
            f"SELECT * FROM {self.table_name} WHERE occurred_at < %s "
            "ORDER BY occurred_at, event_id",
            (cutoff,),
        )

    def existing_ids(self, event_ids: Iterable[str]) -> List[str]:
        """The subset of ``event_ids`` present in the table."""
        ids = list(event_ids)
        if not ids:
            return []
        if not self.uses_database:
            with self._lock:
                return [i for i in ids if i in self._memory]

        rows = self._read(
            f"SELECT event_id FROM {self.table_name} WHERE event_id = ANY(%s)",
            (ids,),
        )
        found = {row[0] for row in rows}
        return [i for i in ids if i in found]

    def delete_ids(self, event_ids: Iterable[str]) -> int:
        ids = list(event_ids)
        if not ids:
            return 0
        if not self.uses_database:
            with self._lock:
                return sum(1 for i in ids if self._memory.pop(i, None) is not None)

        return self._execute(
            f"DELETE FROM {self.table_name} WHERE event_id = ANY(%s)", (ids,)
        )

    def list_subject(self, anonymous_subject_hash: str) -> List[InteractionEvent]:
        if not self.uses_database:
            return self._select_memory(
                lambda e: e.anonymous_subject_hash == anonymous_subject_hash
            )

        return self._fetchall(
            f"SELECT * FROM {self.table_name} WHERE anonymous_subject_hash = %s "
            "ORDER BY occurred_at, event_id",
            (anonymous_subject_hash,),
        )

    def delete_subject(self, anonymous_subject_hash: str) -> int:
        """Delete every row for one anonymous subject."""
        if not self.uses_database:
            with self._lock:
                ids = [
                    k for k, e in self._memory.items()
                    if e.anonymous_subject_hash == anonymous_subject_hash
                ]
                for event_id in ids:
                    del self._memory[event_id]
            return len(ids)

        return self._execute(
            f"DELETE FROM {self.table_name} WHERE anonymous_subject_hash = %s",
            (anonymous_subject_hash,),
        )

    def count_subject(self, anonymous_subject_hash: str) -> int:
        if not self.uses_database:
            return len(self.list_subject(anonymous_subject_hash))

        return int(self._fetch_scalar(
            f"SELECT COUNT(*) FROM {self.table_name} WHERE anonymous_subject_hash = %s",
            (anonymous_subject_hash,),
        ) or 0)

    def _select_memory(self, predicate) -> List[InteractionEvent]:
        with self._lock:
            events = [e for e in self._memory.values() if predicate(e)]
        return sorted(events, key=lambda e: (e.occurred_at, e.event_id))


@dataclass(frozen=True)
class IngestedBatch:
    """Record of a batch that has been fully persisted."""
    batch_id: str
    classroom_id: str
    event_count: int
    ingested_at: datetime


class IngestedBatchRepository(BaseRepository[IngestedBatch]):
    """Completed batch ids, used to make re-delivery a no-op."""

    id_column = "batch_id"

    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        super().__init__(connection_manager, "ingested_batches")

    def _row_to_entity(self, row: tuple) -> IngestedBatch:
        return IngestedBatch(
            batch_id=row[0],
            classroom_id=row[1],
            event_count=row[2],
            ingested_at=row[3],
        )

    def _entity_to_params(self, entity: IngestedBatch) -> Dict[str, Any]:
        return {
            "batch_id": entity.batch_id,
            "classroom_id": entity.classroom_id,
            "event_count": entity.event_count,
            "ingested_at": entity.ingested_at,
        }

    def _entity_id(self, entity: IngestedBatch) -> str:
        return entity.batch_id

    def record(self, batch: IngestedBatch) -> bool:
        """Record a completed batch.

        Returns:
            True if recorded, False if the batch_id was already present
        """
        if not self.uses_database:
            with self._lock:
                if batch.batch_id in self._memory:
                    return False
                self._memory[batch.batch_id] = batch
            return True

        return self._execute(
            "INSERT INTO ingested_batches (batch_id, classroom_id, event_count, ingested_at) "
            "VALUES (%s, %s, %s, %s) ON CONFLICT (batch_id) DO NOTHING",
            (batch.batch_id, batch.classroom_id, batch.event_count, batch.ingested_at),
        ) > 0
