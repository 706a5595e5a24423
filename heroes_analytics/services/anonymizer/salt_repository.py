"""Keyed store of daily anonymization salts.

One row per calendar day. Creation is insert-if-absent so concurrent
creators converge on a single salt; deleting a row makes every hash
derived from it permanently unlinkable.
"""
import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional

from heroes_analytics.shared.database import BaseRepository, ConnectionManager
from heroes_analytics.shared.models import AnonymousSaltRecord

logger = logging.getLogger(__name__)


class SaltRepository(BaseRepository[AnonymousSaltRecord]):
    """Repository for ``anonymous_hash_salts``."""

    id_column = "salt_date"

    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        super().__init__(connection_manager, "anonymous_hash_salts")

    def _row_to_entity(self, row: tuple) -> AnonymousSaltRecord:
        return AnonymousSaltRecord(
            salt_date=row[0],
            salt_value=row[1],
            is_active=row[2],
            created_at=row[3],
        )

    def _entity_to_params(self, entity: AnonymousSaltRecord) -> Dict[str, Any]:
        return {
            "salt_date": entity.salt_date,
            "salt_value": entity.salt_value,
            "is_active": entity.is_active,
            "created_at": entity.created_at,
        }

    def _entity_id(self, entity: AnonymousSaltRecord) -> str:
        return entity.salt_date.isoformat()

    def get_for_date(self, salt_date: date) -> Optional[AnonymousSaltRecord]:
        """Return the active salt for a day, if one exists."""
        record = self.find_by_id(salt_date.isoformat())
        if record is None or not record.is_active:
            return None
        return record

    def get_or_create(
        self,
        salt_date: date,
        factory: Callable[[], AnonymousSaltRecord],
    ) -> AnonymousSaltRecord:
        """Return the stored salt for ``salt_date``, inserting one if absent.

        Args:
            salt_date: Calendar day of the salt
            factory: Builds a candidate record; only used when none exists

        Returns:
            The record that is actually stored, which may have been written
            by a concurrent creator rather than by this call
        """
        key = salt_date.isoformat()

        if not self.uses_database:
            with self._lock:
                existing = self._memory.get(key)
                if existing is not None:
                    return existing
                record = factory()
                self._memory[key] = record
            logger.info("DAILY_SALT_CREATED", extra={"salt_date": key})
            return record

        record = factory()
        inserted = self._execute(
            """
            INSERT INTO anonymous_hash_salts (salt_date, salt_value, is_active, created_at)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (salt_date) DO NOTHING
            """,
            (record.salt_date, record.salt_value, record.is_active, record.created_at),
        )
        if inserted:
            logger.info("DAILY_SALT_CREATED", extra={"salt_date": key})

        return self.get(key)

    def list_dates(self) -> List[date]:
        """Days that still have an active salt, oldest first."""
        if not self.uses_database:
            with self._lock:
                records = list(self._memory.values())
            return sorted(r.salt_date for r in records if r.is_active)

        rows = self._fetchall(
            "SELECT * FROM anonymous_hash_salts WHERE is_active ORDER BY salt_date"
        )
        return [r.salt_date for r in rows]

    def delete_older_than(self, cutoff: date) -> int:
        """Delete salts for days strictly before ``cutoff``.

        Returns:
            Number of salts deleted
        """
        if not self.uses_database:
            with self._lock:
                stale = [k for k, r in self._memory.items() if r.salt_date < cutoff]
                for key in stale:
                    del self._memory[key]
            deleted = len(stale)
        else:
            deleted = self._execute(
                "DELETE FROM anonymous_hash_salts WHERE salt_date < %s",
                (cutoff,),
            )

        logger.info(
            "DAILY_SALTS_DELETED",
            extra={"cutoff": cutoff.isoformat(), "deleted": deleted}
        )
        return deleted
