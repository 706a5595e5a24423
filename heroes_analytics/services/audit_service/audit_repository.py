"""Audit repository for append-only audit trail storage.

PostgreSQL uses an append-only table (the service role has no UPDATE or
DELETE grant on it); the in-memory backend serves development and tests.
"""
import json
import logging
import threading
from datetime import datetime
from typing import List, Optional

from psycopg2.extras import Json

from heroes_analytics.shared.database import ConnectionManager, RepositoryError
from .audit_logger import AuditAction, AuditEntity, AuditEntry

logger = logging.getLogger(__name__)


class AuditRepository:
    """Repository for immutable audit entries."""

    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        """Initialize audit repository.

        Args:
            connection_manager: PostgreSQL connection manager (None for in-memory)
        """
        self.connection_manager = connection_manager
        self._lock = threading.Lock()
        self._memory_store: List[AuditEntry] = []

        logger.info(
            "AUDIT_REPOSITORY_INITIALIZED",
            extra={"backend": "postgresql" if connection_manager else "memory"}
        )

    def append(self, entry: AuditEntry) -> bool:
        """Append audit entry to storage.

        Entries cannot be modified or deleted once appended.

        Returns:
            True if stored successfully

        Raises:
            RepositoryError: If storage fails
        """
        if not self.connection_manager:
            with self._lock:
                self._memory_store.append(entry)
            logger.debug(
                "AUDIT_ENTRY_STORED_MEMORY",
                extra={"entry_id": entry.entry_id, "action": entry.action.value}
            )
            return True

        query = """
            INSERT INTO audit_entries (
                entry_id, timestamp, action, entity_type, entity_id,
                actor_id, actor_role, classroom_id, details,
                previous_hash, entry_hash
            ) VALUES (
                %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s
            )
        """
        params = (
            entry.entry_id,
            entry.timestamp,
            entry.action.value,
            entry.entity_type.value,
            entry.entity_id,
            entry.actor_id,
            entry.actor_role,
            entry.classroom_id,
            Json(entry.details),
            entry.previous_hash,
            entry.entry_hash,
        )

        try:
            with self.connection_manager.transaction() as cur:
                cur.execute(query, params)
        except Exception as e:
            logger.error(
                "POSTGRES_APPEND_FAILED",
                extra={"entry_id": entry.entry_id, "error": str(e)}
            )
            raise RepositoryError(f"Failed to append audit entry: {e}") from e

        logger.debug(
            "AUDIT_ENTRY_STORED_POSTGRES",
            extra={"entry_id": entry.entry_id, "action": entry.action.value}
        )
        return True

    def last_entry(self) -> Optional[AuditEntry]:
        """Most recently appended entry (the chain head)."""
        if not self.connection_manager:
            with self._lock:
                return self._memory_store[-1] if self._memory_store else None

        rows = self._select(
            "SELECT * FROM audit_entries ORDER BY sequence_number DESC LIMIT 1", ()
        )
        return rows[0] if rows else None

    def all_entries(self) -> List[AuditEntry]:
        """Every entry in append order."""
        if not self.connection_manager:
            with self._lock:
                return list(self._memory_store)

        return self._select("SELECT * FROM audit_entries ORDER BY sequence_number", ())

    def query(
        self,
        entity_type: Optional[AuditEntity] = None,
        entity_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        classroom_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        """Query audit entries.

        Args:
            entity_type: Filter by entity type
            entity_id: Filter by entity ID
            action: Filter by action
            classroom_id: Filter by classroom
            start_date: Filter by start date
            end_date: Filter by end date
            limit: Maximum entries to return

        Returns:
            Matching entries, newest first
        """
        if not self.connection_manager:
            with self._lock:
                results = list(reversed(self._memory_store))

            if entity_type:
                results = [e for e in results if e.entity_type == entity_type]
            if entity_id:
                results = [e for e in results if e.entity_id == entity_id]
            if action:
                results = [e for e in results if e.action == action]
            if classroom_id:
                results = [e for e in results if e.classroom_id == classroom_id]
            if start_date:
                results = [e for e in results if e.timestamp >= start_date]
            if end_date:
                results = [e for e in results if e.timestamp <= end_date]
            return results[:limit]

        query = "SELECT * FROM audit_entries WHERE 1=1"
        params: list = []

        if entity_type:
            query += " AND entity_type = %s"
            params.append(entity_type.value)
        if entity_id:
            query += " AND entity_id = %s"
            params.append(entity_id)
        if action:
            query += " AND action = %s"
            params.append(action.value)
        if classroom_id:
            query += " AND classroom_id = %s"
            params.append(classroom_id)
        if start_date:
            query += " AND timestamp >= %s"
            params.append(start_date)
        if end_date:
            query += " AND timestamp <= %s"
            params.append(end_date)

        query += " ORDER BY sequence_number DESC LIMIT %s"
        params.append(limit)

        return self._select(query, params)

    def _select(self, query: str, params) -> List[AuditEntry]:
        try:
            with self.connection_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, tuple(params))
                    rows = cur.fetchall()
        except Exception as e:
            logger.error("POSTGRES_QUERY_FAILED", extra={"error": str(e)})
            raise RepositoryError(f"Failed to query audit entries: {e}") from e
        return [self._row_to_entry(row) for row in rows]

    @staticmethod
    def _row_to_entry(row: tuple) -> AuditEntry:
        """Convert PostgreSQL row to AuditEntry."""
        details = row[8]
        if isinstance(details, str):
            details = json.loads(details)

        return AuditEntry(
            entry_id=row[0],
            timestamp=row[1],
            action=AuditAction(row[2]),
            entity_type=AuditEntity(row[3]),
            entity_id=row[4],
            actor_id=row[5],
            actor_role=row[6],
            classroom_id=row[7],
            details=details or {},
            previous_hash=row[9].strip(),
            entry_hash=row[10].strip(),
        )
