"""PostgreSQL schema for the analytics pipeline.

Column order matters: repositories map ``SELECT *`` rows positionally.

Device-side tables (one Batcher/Sync Agent pair per device):
    local_interaction_events, sync_batches

Shared server-side tables:
    anonymous_hash_salts, interaction_events, interaction_events_archive,
    ingested_batches, analytics_aggregation_cache, data_retention_log,
    audit_entries
"""
import logging
from typing import Dict, List

from .connection import ConnectionManager
from .repository import RepositoryError

logger = logging.getLogger(__name__)


DEVICE_TABLES: Dict[str, str] = {
    "local_interaction_events": """
        CREATE TABLE IF NOT EXISTS local_interaction_events (
            event_id VARCHAR(64) PRIMARY KEY,
            anonymous_subject_hash CHAR(64) NOT NULL,
            classroom_id VARCHAR(64) NOT NULL,
            lesson_id VARCHAR(64) NOT NULL,
            category VARCHAR(32) NOT NULL,
            interaction_type VARCHAR(100) NOT NULL,
            score SMALLINT NOT NULL CHECK (score BETWEEN 1 AND 5),
            occurred_at TIMESTAMP NOT NULL,
            metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
            sync_state VARCHAR(16) NOT NULL,
            attempt_count INTEGER NOT NULL DEFAULT 0,
            last_attempt_at TIMESTAMP,
            batch_id VARCHAR(64)
        )
    """,
    "sync_batches": """
        CREATE TABLE IF NOT EXISTS sync_batches (
            batch_id VARCHAR(64) PRIMARY KEY,
            classroom_id VARCHAR(64) NOT NULL,
            event_ids JSONB NOT NULL,
            status VARCHAR(16) NOT NULL,
            attempt_count INTEGER NOT NULL DEFAULT 0,
            next_retry_at TIMESTAMP,
            created_at TIMESTAMP NOT NULL,
            completed_at TIMESTAMP,
            last_attempt_at TIMESTAMP,
            last_error TEXT,
            retry_of VARCHAR(64)
        )
    """,
}

SERVER_TABLES: Dict[str, str] = {
    "anonymous_hash_salts": """
        CREATE TABLE IF NOT EXISTS anonymous_hash_salts (
            salt_date DATE PRIMARY KEY,
            salt_value CHAR(64) NOT NULL,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "interaction_events": """
        CREATE TABLE IF NOT EXISTS interaction_events (
            event_id VARCHAR(64) PRIMARY KEY,
            anonymous_subject_hash CHAR(64) NOT NULL,
            classroom_id VARCHAR(64) NOT NULL,
            lesson_id VARCHAR(64) NOT NULL,
            category VARCHAR(32) NOT NULL,
            interaction_type VARCHAR(100) NOT NULL,
            score SMALLINT NOT NULL CHECK (score BETWEEN 1 AND 5),
            occurred_at TIMESTAMP NOT NULL,
            metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
            batch_id VARCHAR(64),
            ingested_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "interaction_events_archive": """
        CREATE TABLE IF NOT EXISTS interaction_events_archive (
            event_id VARCHAR(64) PRIMARY KEY,
            anonymous_subject_hash CHAR(64) NOT NULL,
            classroom_id VARCHAR(64) NOT NULL,
            lesson_id VARCHAR(64) NOT NULL,
            category VARCHAR(32) NOT NULL,
            interaction_type VARCHAR(100) NOT NULL,
            score SMALLINT NOT NULL,
            occurred_at TIMESTAMP NOT NULL,
            metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
            batch_id VARCHAR(64),
            archived_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "ingested_batches": """
        CREATE TABLE IF NOT EXISTS ingested_batches (
            batch_id VARCHAR(64) PRIMARY KEY,
            classroom_id VARCHAR(64) NOT NULL,
            event_count INTEGER NOT NULL,
            ingested_at TIMESTAMP NOT NULL
        )
    """,
    "analytics_aggregation_cache": """
        CREATE TABLE IF NOT EXISTS analytics_aggregation_cache (
            cache_key VARCHAR(255) PRIMARY KEY,
            classroom_id VARCHAR(64) NOT NULL,
            category VARCHAR(32) NOT NULL,
            aggregation_level VARCHAR(16) NOT NULL,
            window_start TIMESTAMP NOT NULL,
            window_end TIMESTAMP NOT NULL,
            payload JSONB NOT NULL,
            computed_at TIMESTAMP NOT NULL,
            expires_at TIMESTAMP NOT NULL,
            cache_status VARCHAR(16) NOT NULL DEFAULT 'active',
            record_count INTEGER NOT NULL DEFAULT 0,
            computation_time_ms DOUBLE PRECISION NOT NULL DEFAULT 0
        )
    """,
    "data_retention_log": """
        CREATE TABLE IF NOT EXISTS data_retention_log (
            entry_id VARCHAR(64) PRIMARY KEY,
            table_name VARCHAR(100) NOT NULL,
            policy_days INTEGER NOT NULL,
            records_archived INTEGER NOT NULL,
            records_deleted INTEGER NOT NULL,
            executed_at TIMESTAMP NOT NULL,
            duration_ms DOUBLE PRECISION NOT NULL
        )
    """,
    "audit_entries": """
        CREATE TABLE IF NOT EXISTS audit_entries (
            entry_id VARCHAR(64) PRIMARY KEY,
            timestamp TIMESTAMP NOT NULL,
            action VARCHAR(50) NOT NULL,
            entity_type VARCHAR(50) NOT NULL,
            entity_id VARCHAR(255) NOT NULL,
            actor_id VARCHAR(255) NOT NULL,
            actor_role VARCHAR(50) NOT NULL,
            classroom_id VARCHAR(64),
            details JSONB NOT NULL DEFAULT '{}'::jsonb,
            previous_hash VARCHAR(64) NOT NULL,
            entry_hash CHAR(64) NOT NULL,
            sequence_number BIGSERIAL
        )
    """,
}

INDEXES: Dict[str, List[str]] = {
    "local_interaction_events": [
        "CREATE INDEX IF NOT EXISTS idx_local_events_pending "
        "ON local_interaction_events(sync_state, occurred_at)",
    ],
    "sync_batches": [
        "CREATE INDEX IF NOT EXISTS idx_sync_batches_status "
        "ON sync_batches(status, next_retry_at)",
    ],
    "interaction_events": [
        "CREATE INDEX IF NOT EXISTS idx_events_occurred "
        "ON interaction_events(occurred_at)",
        "CREATE INDEX IF NOT EXISTS idx_events_subject "
        "ON interaction_events(anonymous_subject_hash)",
        "CREATE INDEX IF NOT EXISTS idx_events_window "
        "ON interaction_events(classroom_id, category, occurred_at)",
    ],
    "interaction_events_archive": [
        "CREATE INDEX IF NOT EXISTS idx_archive_subject "
        "ON interaction_events_archive(anonymous_subject_hash)",
    ],
    "analytics_aggregation_cache": [
        "CREATE INDEX IF NOT EXISTS idx_cache_classroom "
        "ON analytics_aggregation_cache(classroom_id, window_start, window_end)",
    ],
}


def ensure_schema(
    connection_manager: ConnectionManager,
    tables: Dict[str, str],
) -> None:
    """Create the given tables and their indexes if they do not exist.

    Raises:
        RepositoryError: If a statement fails
    """
    with connection_manager.transaction() as cur:
        for table_name, ddl in tables.items():
            try:
                cur.execute(ddl)
                for index_sql in INDEXES.get(table_name, []):
                    cur.execute(index_sql)
            except Exception as e:
                raise RepositoryError(
                    f"Failed to create table {table_name}: {e}"
                ) from e

    logger.info(
        "SCHEMA_ENSURED",
        extra={"tables": sorted(tables)}
    )
