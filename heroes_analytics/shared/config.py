"""Runtime configuration for pipeline components.

Each config is a frozen dataclass with production defaults and a
``from_env()`` constructor for deployment overrides.
"""
import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class SyncConfig:
    """Client-side batching and upload policy."""
    max_batch_size: int = 100
    max_batches_per_run: int = 50
    max_attempts: int = 3
    backoff_base_seconds: float = 30.0
    backoff_max_seconds: float = 900.0
    jitter_ratio: float = 0.1
    upload_timeout_seconds: float = 15.0
    in_flight_timeout_seconds: float = 60.0
    concurrency_limit: int = 2
    sync_interval_seconds: float = 300.0
    event_store_capacity: int = 10000
    allow_manual_resync: bool = True
    completed_batch_grace_days: int = 1
    failed_batch_retention_days: int = 7

    @classmethod
    def from_env(cls) -> "SyncConfig":
        """Create config from environment variables.

        Environment variables:
            SYNC_MAX_BATCH_SIZE: Events per batch (default 100)
            SYNC_MAX_ATTEMPTS: Upload attempts before terminal failure (default 3)
            SYNC_BACKOFF_BASE: Base backoff delay in seconds (default 30)
            SYNC_BACKOFF_MAX: Backoff cap in seconds (default 900)
            SYNC_UPLOAD_TIMEOUT: Per-upload timeout in seconds (default 15)
            SYNC_CONCURRENCY: Concurrent batch uploads (default 2)
            SYNC_INTERVAL: Periodic trigger interval in seconds (default 300)
            EVENT_STORE_CAPACITY: Local event rows before eviction (default 10000)
            SYNC_ALLOW_MANUAL_RESYNC: Allow one re-batch of failed batches (default true)
        """
        return cls(
            max_batch_size=int(os.getenv("SYNC_MAX_BATCH_SIZE", "100")),
            max_attempts=int(os.getenv("SYNC_MAX_ATTEMPTS", "3")),
            backoff_base_seconds=float(os.getenv("SYNC_BACKOFF_BASE", "30")),
            backoff_max_seconds=float(os.getenv("SYNC_BACKOFF_MAX", "900")),
            upload_timeout_seconds=float(os.getenv("SYNC_UPLOAD_TIMEOUT", "15")),
            concurrency_limit=int(os.getenv("SYNC_CONCURRENCY", "2")),
            sync_interval_seconds=float(os.getenv("SYNC_INTERVAL", "300")),
            event_store_capacity=int(os.getenv("EVENT_STORE_CAPACITY", "10000")),
            allow_manual_resync=_env_bool("SYNC_ALLOW_MANUAL_RESYNC", True),
        )


@dataclass(frozen=True)
class IngestionConfig:
    """Server-side batch acceptance limits."""
    max_events_per_batch: int = 500
    max_clock_skew_minutes: int = 10
    require_authorization: bool = True

    @classmethod
    def from_env(cls) -> "IngestionConfig":
        return cls(
            max_events_per_batch=int(os.getenv("INGEST_MAX_EVENTS", "500")),
            max_clock_skew_minutes=int(os.getenv("INGEST_MAX_CLOCK_SKEW_MINUTES", "10")),
            require_authorization=_env_bool("INGEST_REQUIRE_AUTH", True),
        )


@dataclass(frozen=True)
class AggregationConfig:
    """Aggregation cache freshness and privacy thresholds."""
    ttl_minutes: int = 60
    k_anonymity_threshold: int = 5

    @classmethod
    def from_env(cls) -> "AggregationConfig":
        return cls(
            ttl_minutes=int(os.getenv("AGGREGATION_TTL_MINUTES", "60")),
            k_anonymity_threshold=int(os.getenv("K_ANONYMITY_THRESHOLD", "5")),
        )


@dataclass(frozen=True)
class RetentionConfig:
    """Data lifecycle policy.

    ``salt_retention_days`` bounds how long a day's hashes stay linkable;
    deleting the salt is what makes them permanently unlinkable.
    """
    policy_days: int = 90
    salt_retention_days: int = 7

    @classmethod
    def from_env(cls) -> "RetentionConfig":
        return cls(
            policy_days=int(os.getenv("RETENTION_POLICY_DAYS", "90")),
            salt_retention_days=int(os.getenv("SALT_RETENTION_DAYS", "7")),
        )
