"""Tests for schema creation."""
import pytest
from unittest.mock import MagicMock

from heroes_analytics.shared.database.connection import ConnectionManager
from heroes_analytics.shared.database.repository import RepositoryError
from heroes_analytics.shared.database.schema import (
    DEVICE_TABLES,
    SERVER_TABLES,
    INDEXES,
    ensure_schema,
)


@pytest.fixture
def cursor():
    return MagicMock()


@pytest.fixture
def connection_manager(cursor):
    manager = MagicMock(spec=ConnectionManager)
    manager.transaction.return_value.__enter__.return_value = cursor
    return manager


class TestSchema:

    def test_device_and_server_tables_are_disjoint(self):
        assert not set(DEVICE_TABLES) & set(SERVER_TABLES)

    def test_indexes_reference_known_tables(self):
        known = set(DEVICE_TABLES) | set(SERVER_TABLES)
        assert set(INDEXES) <= known

    def test_ensure_schema_creates_tables_and_indexes(self, connection_manager, cursor):
        ensure_schema(connection_manager, SERVER_TABLES)

        statements = [call[0][0] for call in cursor.execute.call_args_list]
        expected = len(SERVER_TABLES) + sum(
            len(INDEXES.get(name, [])) for name in SERVER_TABLES
        )
        assert len(statements) == expected
        assert any("CREATE TABLE IF NOT EXISTS interaction_events (" in s for s in statements)

    def test_ensure_schema_wraps_failures(self, connection_manager, cursor):
        cursor.execute.side_effect = Exception("permission denied")

        with pytest.raises(RepositoryError, match="local_interaction_events"):
            ensure_schema(connection_manager, DEVICE_TABLES)
