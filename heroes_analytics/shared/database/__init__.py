"""Database connection management for the analytics pipeline.

Provides connection pooling, health checks, and repository base classes
for PostgreSQL, with an in-memory backend for development and tests.
"""

from .connection import (
    DatabaseConfig,
    ConnectionManager,
    get_connection_manager,
    connection_manager_from_env,
)
from .repository import (
    BaseRepository,
    RepositoryError,
    NotFoundError,
    DuplicateError,
)

__all__ = [
    "DatabaseConfig",
    "ConnectionManager",
    "get_connection_manager",
    "connection_manager_from_env",
    "BaseRepository",
    "RepositoryError",
    "NotFoundError",
    "DuplicateError",
]
