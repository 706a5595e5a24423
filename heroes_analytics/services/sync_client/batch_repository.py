"""Persistence for upload batches (``sync_batches``).

Batch state, including ``next_retry_at``, lives in the table rather than in
a running coroutine, so a restarted process resumes retries where it left off.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg2.extras import Json

from heroes_analytics.shared.database import BaseRepository, ConnectionManager
from heroes_analytics.shared.models import Batch, BatchStatus

logger = logging.getLogger(__name__)


class BatchRepository(BaseRepository[Batch]):
    """Device-local batch table."""

    id_column = "batch_id"

    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        super().__init__(connection_manager, "sync_batches")

    def _row_to_entity(self, row: tuple) -> Batch:
        return Batch(
            batch_id=row[0],
            classroom_id=row[1],
            event_ids=tuple(row[2]),
            status=BatchStatus(row[3]),
            attempt_count=row[4],
            next_retry_at=row[5],
            created_at=row[6],
            completed_at=row[7],
            last_attempt_at=row[8],
            last_error=row[9],
            retry_of=row[10],
        )

    def _entity_to_params(self, entity: Batch) -> Dict[str, Any]:
        return {
            "batch_id": entity.batch_id,
            "classroom_id": entity.classroom_id,
            "event_ids": Json(list(entity.event_ids)),
            "status": entity.status.value,
            "attempt_count": entity.attempt_count,
            "next_retry_at": entity.next_retry_at,
            "created_at": entity.created_at,
            "completed_at": entity.completed_at,
            "last_attempt_at": entity.last_attempt_at,
            "last_error": entity.last_error,
            "retry_of": entity.retry_of,
        }

    def _entity_id(self, entity: Batch) -> str:
        return entity.batch_id

    def list_by_status(self, status: BatchStatus) -> List[Batch]:
        """Batches in one status, oldest first."""
        if not self.uses_database:
            with self._lock:
                batches = [b for b in self._memory.values() if b.status == status]
            return sorted(batches, key=lambda b: (b.created_at, b.batch_id))

        return self._fetchall(
            "SELECT * FROM sync_batches WHERE status = %s ORDER BY created_at, batch_id",
            (status.value,),
        )

    def list_due(self, now: datetime) -> List[Batch]:
        """Pending batches whose backoff delay has elapsed."""
        if not self.uses_database:
            return [b for b in self.list_by_status(BatchStatus.PENDING) if b.is_due(now)]

        return self._fetchall(
            """
            SELECT * FROM sync_batches
            WHERE status = %s AND (next_retry_at IS NULL OR next_retry_at <= %s)
            ORDER BY created_at, batch_id
            """,
            (BatchStatus.PENDING.value, now),
        )

    def find_retry_of(self, batch_id: str) -> Optional[Batch]:
        """The manual re-batch created from ``batch_id``, if any."""
        if not self.uses_database:
            with self._lock:
                for batch in self._memory.values():
                    if batch.retry_of == batch_id:
                        return batch
            return None

        return self._fetchone(
            "SELECT * FROM sync_batches WHERE retry_of = %s LIMIT 1",
            (batch_id,),
        )

    def count_by_status(self) -> Dict[BatchStatus, int]:
        counts = {status: 0 for status in BatchStatus}
        if not self.uses_database:
            with self._lock:
                for batch in self._memory.values():
                    counts[batch.status] += 1
            return counts

        rows = self._read("SELECT status, COUNT(*) FROM sync_batches GROUP BY status")
        for status, count in rows:
            counts[BatchStatus(status)] = int(count)
        return counts

    def delete_finished(
        self,
        completed_before: datetime,
        failed_before: datetime,
    ) -> int:
        """Delete completed and failed batches past their retention.

        Args:
            completed_before: Completed batches finished before this are removed
            failed_before: Failed batches created before this are removed

        Returns:
            Number of batches deleted
        """
        if self.uses_database:
            return self._execute(
                """
                DELETE FROM sync_batches
                WHERE (status = %s AND completed_at < %s)
                   OR (status = %s AND created_at < %s)
                """,
                (
                    BatchStatus.COMPLETED.value, completed_before,
                    BatchStatus.FAILED.value, failed_before,
                ),
            )

        with self._lock:
            stale = [
                b.batch_id for b in self._memory.values()
                if (b.status == BatchStatus.COMPLETED
                    and b.completed_at is not None
                    and b.completed_at < completed_before)
                or (b.status == BatchStatus.FAILED and b.created_at < failed_before)
            ]
            for batch_id in stale:
                del self._memory[batch_id]
        return len(stale)
