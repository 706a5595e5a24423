"""Tests for database connection manager."""
import pytest
from unittest.mock import MagicMock, patch

from heroes_analytics.shared.database import connection
from heroes_analytics.shared.database.connection import (
    DatabaseConfig,
    ConnectionManager,
    connection_manager_from_env,
)


class TestDatabaseConfig:
    """Tests for DatabaseConfig dataclass."""

    def test_default_values(self):
        config = DatabaseConfig(host="localhost")

        assert config.host == "localhost"
        assert config.port == 5432
        assert config.database == "heroes_analytics"
        assert config.min_connections == 2
        assert config.max_connections == 10
        assert config.ssl_mode == "require"

    def test_from_env(self):
        with patch.dict("os.environ", {
            "DB_HOST": "env-host",
            "DB_PORT": "5434",
            "DB_NAME": "env_db",
            "DB_USER": "env_user",
            "DB_PASSWORD": "env_pass",
        }):
            config = DatabaseConfig.from_env()

            assert config.host == "env-host"
            assert config.port == 5434
            assert config.database == "env_db"
            assert config.username == "env_user"
            assert config.password == "env_pass"

    def test_from_env_defaults(self):
        with patch.dict("os.environ", {}, clear=True):
            config = DatabaseConfig.from_env()

            assert config.host == "localhost"
            assert config.port == 5432
            assert config.database == "heroes_analytics"

    def test_from_secrets_manager(self):
        client = MagicMock()
        client.get_secret_value.return_value = {
            "SecretString": '{"host": "rds-host", "username": "svc", "password": "pw"}'
        }
        with patch("heroes_analytics.shared.database.connection.boto3") as boto3:
            boto3.client.return_value = client
            config = DatabaseConfig.from_secrets_manager("arn:secret")

        assert config.host == "rds-host"
        assert config.username == "svc"
        assert config.password == "pw"
        boto3.client.assert_called_once_with("secretsmanager", region_name="us-east-1")

    def test_from_secrets_manager_keeps_pool_settings_from_env(self):
        client = MagicMock()
        client.get_secret_value.return_value = {
            "SecretString": '{"host": "rds-host", "port": 6543, "dbname": "prod"}'
        }
        with patch.dict("os.environ", {"DB_MAX_CONN": "25", "DB_SSL_MODE": "verify-full"}):
            with patch("heroes_analytics.shared.database.connection.boto3") as boto3:
                boto3.client.return_value = client
                config = DatabaseConfig.from_secrets_manager("arn:secret", region="eu-west-1")

        assert config.host == "rds-host"
        assert config.port == 6543
        assert config.database == "prod"
        assert config.max_connections == 25
        assert config.ssl_mode == "verify-full"

    def test_from_secrets_manager_failure_propagates(self):
        with patch("heroes_analytics.shared.database.connection.boto3") as boto3:
            boto3.client.return_value.get_secret_value.side_effect = RuntimeError("denied")
            with pytest.raises(RuntimeError):
                DatabaseConfig.from_secrets_manager("arn:secret")

    def test_connect_kwargs_carry_statement_timeout(self):
        config = DatabaseConfig(host="db", statement_timeout_ms=5000, username="svc")

        kwargs = config.connect_kwargs()

        assert kwargs["options"] == "-c statement_timeout=5000"
        assert kwargs["user"] == "svc"
        assert kwargs["application_name"] == "heroes-analytics"
        assert kwargs["sslmode"] == "require"


@pytest.fixture
def pooled_manager():
    """Manager whose psycopg2 pool is replaced with a mock."""
    with patch(
        "heroes_analytics.shared.database.connection.pool.ThreadedConnectionPool"
    ) as pool_cls:
        conn = MagicMock()
        pool_cls.return_value.getconn.return_value = conn
        manager = ConnectionManager(DatabaseConfig(host="localhost"))
        manager.initialize()
        yield manager, pool_cls.return_value, conn


class TestConnectionManager:
    """Tests for ConnectionManager class."""

    def test_initialization(self):
        config = DatabaseConfig(host="localhost")
        manager = ConnectionManager(config)

        assert manager.config == config
        assert manager.initialized is False

    def test_initialize_creates_pool(self, pooled_manager):
        manager, _, _ = pooled_manager

        assert manager.initialized is True

    def test_pool_created_with_config(self):
        with patch(
            "heroes_analytics.shared.database.connection.pool.ThreadedConnectionPool"
        ) as pool_cls:
            manager = ConnectionManager(DatabaseConfig(host="db", max_connections=4))
            manager.initialize()
            manager.initialize()

        pool_cls.assert_called_once()
        kwargs = pool_cls.call_args.kwargs
        assert kwargs["maxconn"] == 4
        assert kwargs["host"] == "db"
        assert kwargs["options"].startswith("-c statement_timeout=")

    def test_connection_returned_to_pool(self, pooled_manager):
        manager, pool, conn = pooled_manager

        with manager.get_connection() as c:
            assert c is conn

        pool.putconn.assert_called_once_with(conn)

    def test_transaction_commits(self, pooled_manager):
        manager, _, conn = pooled_manager

        with manager.transaction() as cur:
            cur.execute("SELECT 1")

        conn.commit.assert_called_once()
        conn.rollback.assert_not_called()

    def test_transaction_rolls_back_on_error(self, pooled_manager):
        manager, pool, conn = pooled_manager

        with pytest.raises(RuntimeError):
            with manager.transaction():
                raise RuntimeError("boom")

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()
        pool.putconn.assert_called_once_with(conn)

    def test_health_check_not_initialized(self):
        manager = ConnectionManager(DatabaseConfig(host="localhost"))

        health = manager.health_check()

        assert health["status"] == "not_initialized"
        assert health["healthy"] is False

    def test_health_check_connected(self, pooled_manager):
        manager, _, _ = pooled_manager

        health = manager.health_check()

        assert health["status"] == "connected"
        assert health["healthy"] is True

    def test_health_check_error(self, pooled_manager):
        manager, _, conn = pooled_manager
        conn.cursor.side_effect = Exception("connection refused")

        health = manager.health_check()

        assert health["healthy"] is False
        assert "connection refused" in health["error"]

    def test_close(self, pooled_manager):
        manager, pool, _ = pooled_manager

        manager.close()

        pool.closeall.assert_called_once()
        assert manager.initialized is False


class TestConnectionManagerFromEnv:
    """Tests for backend selection from the environment."""

    def test_no_host_means_memory_backend(self):
        with patch.dict("os.environ", {}, clear=True):
            assert connection_manager_from_env() is None

    def test_host_returns_global_manager(self, monkeypatch):
        monkeypatch.delenv("DB_SECRET_ARN", raising=False)
        monkeypatch.setattr(connection, "_connection_manager", None)
        with patch.dict("os.environ", {"DB_HOST": "db.internal"}):
            manager = connection_manager_from_env()

            assert manager.config.host == "db.internal"
            assert connection_manager_from_env() is manager
            assert not manager.initialized

    def test_secret_arn_loads_from_secrets_manager(self, monkeypatch):
        monkeypatch.setattr(connection, "_connection_manager", None)
        loaded = DatabaseConfig(host="rds-host")
        env = {"DB_HOST": "db.internal", "DB_SECRET_ARN": "arn:db", "AWS_REGION": "us-east-1"}
        with patch.dict("os.environ", env):
            with patch.object(
                DatabaseConfig, "from_secrets_manager", return_value=loaded
            ) as from_secret:
                manager = connection_manager_from_env()

        from_secret.assert_called_once_with("arn:db", region="us-east-1")
        assert manager.config is loaded
