"""Database connection manager with pooling and health checks.

Manages PostgreSQL connections for the durable analytics store with:
- Connection pooling shared by every repository of a process
- Transactions that commit on success and roll back on error
- Health checks for readiness endpoints
- Secrets Manager integration for credentials
"""
import json
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterator, Optional

import boto3
from psycopg2 import pool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DatabaseConfig:
    """Database connection configuration.

    Credentials are loaded from AWS Secrets Manager in production,
    or from environment variables in development. Pool sizing and
    timeouts always come from the environment.
    """
    host: str
    port: int = 5432
    database: str = "heroes_analytics"
    username: str = ""
    password: str = ""
    min_connections: int = 2
    max_connections: int = 10
    connect_timeout: int = 10
    statement_timeout_ms: int = 30000
    ssl_mode: str = "require"
    application_name: str = "heroes-analytics"

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Create config from environment variables.

        Environment variables:
            DB_HOST: Database host
            DB_PORT: Database port (default 5432)
            DB_NAME: Database name (default heroes_analytics)
            DB_USER: Database username
            DB_PASSWORD: Database password
            DB_MIN_CONN: Minimum pool connections (default 2)
            DB_MAX_CONN: Maximum pool connections (default 10)
            DB_STATEMENT_TIMEOUT_MS: Per-statement limit (default 30000)
            DB_SSL_MODE: SSL mode (default require)
            DB_APP_NAME: application_name reported to the server
        """
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "heroes_analytics"),
            username=os.getenv("DB_USER", ""),
            password=os.getenv("DB_PASSWORD", ""),
            min_connections=int(os.getenv("DB_MIN_CONN", "2")),
            max_connections=int(os.getenv("DB_MAX_CONN", "10")),
            statement_timeout_ms=int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "30000")),
            ssl_mode=os.getenv("DB_SSL_MODE", "require"),
            application_name=os.getenv("DB_APP_NAME", "heroes-analytics"),
        )

    @classmethod
    def from_secrets_manager(cls, secret_arn: str, region: str = "us-east-1") -> "DatabaseConfig":
        """Load credentials from AWS Secrets Manager.

        Args:
            secret_arn: ARN of the secret containing credentials
            region: AWS region

        Returns:
            DatabaseConfig with host and credentials from the secret and
            everything else from the environment
        """
        try:
            client = boto3.client("secretsmanager", region_name=region)
            response = client.get_secret_value(SecretId=secret_arn)
            secret = json.loads(response["SecretString"])
        except Exception as e:
            logger.error(
                "SECRETS_MANAGER_LOAD_FAILED",
                extra={"error": str(e), "secret_arn": secret_arn}
            )
            raise

        base = cls.from_env()
        return replace(
            base,
            host=secret.get("host", base.host),
            port=int(secret.get("port", base.port)),
            database=secret.get("dbname", base.database),
            username=secret.get("username", ""),
            password=secret.get("password", ""),
        )

    def connect_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for psycopg2.connect."""
        return {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "user": self.username,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
            "sslmode": self.ssl_mode,
            "application_name": self.application_name,
            # A stuck sweep must not hold row locks on the live table
            "options": f"-c statement_timeout={self.statement_timeout_ms}",
        }


class ConnectionManager:
    """Manages database connections with pooling.

    Uses a psycopg2 ThreadedConnectionPool so concurrent ingestion requests
    each get their own connection.
    """

    def __init__(self, config: DatabaseConfig):
        """Initialize connection manager.

        Args:
            config: Database configuration
        """
        self.config = config
        self._pool: Optional[pool.ThreadedConnectionPool] = None

        logger.info(
            "CONNECTION_MANAGER_CREATED",
            extra={
                "host": config.host,
                "database": config.database,
                "min_connections": config.min_connections,
                "max_connections": config.max_connections,
            }
        )

    @property
    def initialized(self) -> bool:
        return self._pool is not None

    def initialize(self) -> None:
        """Initialize the connection pool.

        Call this during application startup.
        """
        if self._pool is not None:
            return

        try:
            self._pool = pool.ThreadedConnectionPool(
                minconn=self.config.min_connections,
                maxconn=self.config.max_connections,
                **self.config.connect_kwargs(),
            )
        except Exception as e:
            logger.error(
                "CONNECTION_POOL_INIT_FAILED",
                extra={"error": str(e)}
            )
            raise

        logger.info(
            "CONNECTION_POOL_INITIALIZED",
            extra={
                "host": self.config.host,
                "database": self.config.database,
            }
        )

    @contextmanager
    def get_connection(self) -> Iterator[Any]:
        """Get a connection from the pool.

        Usage:
            with manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")

        Yields:
            Database connection
        """
        if self._pool is None:
            self.initialize()

        conn = self._pool.getconn()
        try:
            yield conn
        finally:
            self._pool.putconn(conn)

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        """Run a block in one transaction and yield its cursor.

        Commits when the block exits normally, rolls back on any exception.
        """
        with self.get_connection() as conn:
            try:
                with conn.cursor() as cur:
                    yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def health_check(self) -> Dict[str, Any]:
        """Check database connectivity.

        Returns:
            Dictionary with health status
        """
        if self._pool is None:
            return {
                "status": "not_initialized",
                "healthy": False,
            }

        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()

            return {
                "status": "connected",
                "healthy": True,
                "host": self.config.host,
                "database": self.config.database,
            }

        except Exception as e:
            logger.error(
                "DATABASE_HEALTH_CHECK_FAILED",
                extra={"error": str(e)}
            )
            return {
                "status": "error",
                "healthy": False,
                "error": str(e),
            }

    def close(self) -> None:
        """Close all connections in the pool.

        Call this during application shutdown.
        """
        if self._pool is not None:
            self._pool.closeall()
            logger.info("CONNECTION_POOL_CLOSED")

        self._pool = None


# Global connection manager instance
_connection_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    """Get or create the global connection manager.

    Credentials come from Secrets Manager when ``DB_SECRET_ARN`` is set,
    otherwise from the environment.

    Returns:
        ConnectionManager instance
    """
    global _connection_manager

    if _connection_manager is None:
        secret_arn = os.getenv("DB_SECRET_ARN")
        if secret_arn:
            config = DatabaseConfig.from_secrets_manager(
                secret_arn, region=os.getenv("AWS_REGION", "us-east-1")
            )
        else:
            config = DatabaseConfig.from_env()
        _connection_manager = ConnectionManager(config)

    return _connection_manager


def connection_manager_from_env() -> Optional[ConnectionManager]:
    """Global connection manager if ``DB_HOST`` is set, else None.

    Services fall back to their in-memory repositories when no database is
    configured (local development).
    """
    if not os.getenv("DB_HOST"):
        logger.warning("DATABASE_NOT_CONFIGURED", extra={"backend": "memory"})
        return None
    return get_connection_manager()
