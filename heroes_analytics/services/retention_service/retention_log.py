"""Append-only log of retention sweeps (``data_retention_log``)."""
import logging
from typing import Any, Dict, List, Optional

from heroes_analytics.shared.database import BaseRepository, ConnectionManager
from heroes_analytics.shared.models import RetentionLogEntry

logger = logging.getLogger(__name__)


class RetentionLogRepository(BaseRepository[RetentionLogEntry]):
    """One row per sweep. Rows are only ever inserted."""

    id_column = "entry_id"

    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        super().__init__(connection_manager, "data_retention_log")

    def _row_to_entity(self, row: tuple) -> RetentionLogEntry:
        return RetentionLogEntry(
            entry_id=row[0],
            table_name=row[1],
            policy_days=row[2],
            records_archived=row[3],
            records_deleted=row[4],
            executed_at=row[5],
            duration_ms=float(row[6]),
        )

    def _entity_to_params(self, entity: RetentionLogEntry) -> Dict[str, Any]:
        return {
            "entry_id": entity.entry_id,
            "table_name": entity.table_name,
            "policy_days": entity.policy_days,
            "records_archived": entity.records_archived,
            "records_deleted": entity.records_deleted,
            "executed_at": entity.executed_at,
            "duration_ms": entity.duration_ms,
        }

    def _entity_id(self, entity: RetentionLogEntry) -> str:
        return entity.entry_id

    def append(self, entry: RetentionLogEntry) -> RetentionLogEntry:
        """Insert a log entry.

        Raises:
            RepositoryError: If the insert fails or the entry_id exists
        """
        if not self.uses_database:
            with self._lock:
                self._memory[entry.entry_id] = entry
            return entry

        params = self._entity_to_params(entry)
        self._execute(
            f"INSERT INTO data_retention_log ({', '.join(params)}) "
            f"VALUES ({', '.join(['%s'] * len(params))})",
            list(params.values()),
        )
        return entry

    def list_recent(self, limit: int = 50) -> List[RetentionLogEntry]:
        """Most recent sweeps first."""
        if not self.uses_database:
            with self._lock:
                entries = list(self._memory.values())
            entries.sort(key=lambda e: (e.executed_at, e.entry_id), reverse=True)
            return entries[:limit]

        return self._fetchall(
            "SELECT * FROM data_retention_log ORDER BY executed_at DESC, entry_id DESC LIMIT %s",
            (limit,),
        )
