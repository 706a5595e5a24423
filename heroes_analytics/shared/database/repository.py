"""Base repository pattern for database operations.

Every repository runs against one of two backends:
- PostgreSQL through a shared ConnectionManager (production)
- An in-process dictionary guarded by a lock (development and tests)

The backend is chosen by whether a connection manager is supplied.
"""
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, TypeVar

from .connection import ConnectionManager

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class NotFoundError(RepositoryError):
    """Entity not found in database."""
    pass


class DuplicateError(RepositoryError):
    """Duplicate entity already exists."""
    pass


class BaseRepository(ABC, Generic[T]):
    """Abstract base repository with common operations.

    Subclasses implement entity-specific logic while inheriting:
    - Backend selection (PostgreSQL or in-memory)
    - Keyed CRUD for both backends
    - Error handling and logging patterns
    """

    id_column = "id"

    def __init__(
        self,
        connection_manager: Optional[ConnectionManager],
        table_name: str,
    ):
        """Initialize repository.

        Args:
            connection_manager: Database connection manager (None for in-memory)
            table_name: Name of the database table
        """
        self.connection_manager = connection_manager
        self.table_name = table_name
        self._lock = threading.RLock()
        self._memory: Dict[str, T] = {}

        logger.info(
            "REPOSITORY_INITIALIZED",
            extra={
                "table_name": table_name,
                "backend": "postgresql" if connection_manager else "memory",
            }
        )

    @property
    def uses_database(self) -> bool:
        return self.connection_manager is not None

    @abstractmethod
    def _row_to_entity(self, row: tuple) -> T:
        """Convert database row to entity.

        Args:
            row: Database row tuple in column order

        Returns:
            Entity instance
        """
        pass

    @abstractmethod
    def _entity_to_params(self, entity: T) -> Dict[str, Any]:
        """Convert entity to database parameters.

        Args:
            entity: Entity instance

        Returns:
            Dictionary of column names to values, in table column order
        """
        pass

    @abstractmethod
    def _entity_id(self, entity: T) -> str:
        """Return the primary key of an entity."""
        pass

    def _read(
        self,
        query: str,
        params: Sequence[Any] = (),
        fetch: Callable[[Any], Any] = lambda cur: cur.fetchall(),
    ) -> Any:
        """Run a read query and return ``fetch(cursor)``.

        Raises:
            RepositoryError: If the database cannot be read
        """
        try:
            with self.connection_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, tuple(params))
                    return fetch(cur)
        except Exception as e:
            logger.error(
                "REPOSITORY_READ_FAILED",
                extra={"table_name": self.table_name, "error": str(e)}
            )
            raise RepositoryError(f"Read from {self.table_name} failed: {e}") from e

    def _fetchall(self, query: str, params: Sequence[Any] = ()) -> List[T]:
        return [self._row_to_entity(row) for row in self._read(query, params)]

    def _fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[T]:
        row = self._read(query, params, lambda cur: cur.fetchone())
        return self._row_to_entity(row) if row is not None else None

    def _fetch_scalar(self, query: str, params: Sequence[Any] = ()) -> Any:
        row = self._read(query, params, lambda cur: cur.fetchone())
        return row[0] if row else None

    def _execute(self, query: str, params: Sequence[Any] = ()) -> int:
        """Execute a write in its own transaction and return the row count."""
        try:
            with self.connection_manager.transaction() as cur:
                cur.execute(query, tuple(params))
                return cur.rowcount
        except Exception as e:
            logger.error(
                "REPOSITORY_WRITE_FAILED",
                extra={"table_name": self.table_name, "error": str(e)}
            )
            raise RepositoryError(f"Write to {self.table_name} failed: {e}") from e

    def find_by_id(self, entity_id: str) -> Optional[T]:
        """Find entity by ID.

        Args:
            entity_id: Entity identifier

        Returns:
            Entity if found, None otherwise
        """
        if not self.uses_database:
            with self._lock:
                return self._memory.get(entity_id)

        return self._fetchone(
            f"SELECT * FROM {self.table_name} WHERE {self.id_column} = %s",
            (entity_id,)
        )

    def get(self, entity_id: str) -> T:
        """Find entity by ID or raise.

        Raises:
            NotFoundError: If no entity has this ID
        """
        entity = self.find_by_id(entity_id)
        if entity is None:
            raise NotFoundError(f"{self.table_name}: {entity_id} not found")
        return entity

    def save(self, entity: T) -> T:
        """Save entity (insert or update).

        Args:
            entity: Entity to save

        Returns:
            Saved entity
        """
        if not self.uses_database:
            with self._lock:
                self._memory[self._entity_id(entity)] = entity
            return entity

        params = self._entity_to_params(entity)
        columns = list(params.keys())
        values = list(params.values())
        placeholders = ["%s"] * len(values)

        # Upsert query
        update_clause = ", ".join(
            f"{col} = EXCLUDED.{col}" for col in columns if col != self.id_column
        )

        query = f"""
            INSERT INTO {self.table_name} ({", ".join(columns)})
            VALUES ({", ".join(placeholders)})
            ON CONFLICT ({self.id_column}) DO UPDATE SET {update_clause}
        """
        self._execute(query, values)
        return entity

    def delete(self, entity_id: str) -> bool:
        """Delete entity by ID.

        Args:
            entity_id: Entity identifier

        Returns:
            True if deleted, False if not found
        """
        if not self.uses_database:
            with self._lock:
                return self._memory.pop(entity_id, None) is not None

        return self._execute(
            f"DELETE FROM {self.table_name} WHERE {self.id_column} = %s",
            (entity_id,)
        ) > 0

    def count(self) -> int:
        """Count total entities.

        Returns:
            Total count
        """
        if not self.uses_database:
            with self._lock:
                return len(self._memory)

        return int(self._fetch_scalar(f"SELECT COUNT(*) FROM {self.table_name}") or 0)
