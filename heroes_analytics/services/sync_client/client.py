"""Device-side wiring - one SyncClient per classroom device.

Builds the capture, batching and upload components against one local
database (in-memory if None) with policy read from the environment.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from heroes_analytics.shared.config import RetentionConfig, SyncConfig
from heroes_analytics.shared.database import ConnectionManager
from heroes_analytics.services.anonymizer import Anonymizer, SaltRepository
from .batch_repository import BatchRepository
from .batcher import Batcher
from .capture import CaptureService
from .coordinator import SyncCoordinator
from .event_store import EventStore
from .sync_agent import SyncAgent
from .transport import BatchTransport, HttpBatchTransport

logger = logging.getLogger(__name__)


@dataclass
class SyncClient:
    """The device components sharing one event store and salt store."""
    anonymizer: Anonymizer
    event_store: EventStore
    batcher: Batcher
    agent: SyncAgent
    capture_service: CaptureService
    coordinator: SyncCoordinator

    @property
    def config(self) -> SyncConfig:
        return self.agent.config

    def withdraw_consent(self, subject_identifier: str) -> int:
        """Delete a subject's unsynced local events for every retained day.

        Only days whose salt still exists can be linked to the identifier.
        Events already uploaded are purged server-side.

        Args:
            subject_identifier: The subject's local identifier

        Returns:
            Number of local events deleted

        Raises:
            ValidationError: If the identifier is empty
            RepositoryError: If the local store cannot be reached

        Logs:
            - LOCAL_SUBJECT_DELETED: After deletion
        """
        hashes = self.anonymizer.known_hashes(subject_identifier)
        deleted = sum(self.event_store.delete_subject(h) for h in hashes.values())

        logger.info(
            "LOCAL_SUBJECT_DELETED",
            extra={"salt_days": len(hashes), "events_deleted": deleted}
        )
        return deleted


def build_sync_client(
    base_url: Optional[str] = None,
    token_provider: Optional[Callable[[], Optional[str]]] = None,
    connection_manager: Optional[ConnectionManager] = None,
    transport: Optional[BatchTransport] = None,
    config: Optional[SyncConfig] = None,
    salt_connection_manager: Optional[ConnectionManager] = None,
) -> SyncClient:
    """Wire a SyncClient against one local database (in-memory if None).

    Either ``base_url`` or a ``transport`` must be given. Salts live in the
    shared server-side store when ``salt_connection_manager`` is given,
    otherwise next to the local tables.

    Raises:
        ValueError: If neither base_url nor transport is given
    """
    if transport is None and not base_url:
        raise ValueError("base_url or transport is required")

    config = config or SyncConfig.from_env()
    retention = RetentionConfig.from_env()

    anonymizer = Anonymizer(
        SaltRepository(salt_connection_manager or connection_manager),
        salt_retention_days=retention.salt_retention_days,
    )
    event_store = EventStore(connection_manager, capacity=config.event_store_capacity)
    batcher = Batcher(event_store, BatchRepository(connection_manager), config=config)
    if transport is None:
        transport = HttpBatchTransport(
            base_url,
            token_provider=token_provider,
            timeout_seconds=config.upload_timeout_seconds,
        )
    agent = SyncAgent(batcher, transport, config=config)

    logger.info(
        "SYNC_CLIENT_BUILT",
        extra={
            "database": connection_manager is not None,
            "event_store_capacity": config.event_store_capacity,
            "max_batch_size": config.max_batch_size,
        }
    )
    return SyncClient(
        anonymizer=anonymizer,
        event_store=event_store,
        batcher=batcher,
        agent=agent,
        capture_service=CaptureService(anonymizer, event_store),
        coordinator=SyncCoordinator(agent),
    )
