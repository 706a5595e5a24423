"""Client-side sync components.

Runs on the classroom device. Events are captured offline into the local
Event Store, grouped into fixed batches by the Batcher and uploaded by the
Sync Agent whenever the coordinator triggers a run.
"""
from .batch_repository import BatchRepository
from .batcher import Batcher, BATCH_STATUS_TRANSITIONS
from .capture import CaptureResult, CaptureService
from .client import SyncClient, build_sync_client
from .coordinator import SyncCoordinator, SyncTrigger
from .event_store import EventStore
from .sync_agent import SyncAgent, SyncOutcome
from .transport import BatchTransport, HttpBatchTransport, UploadAck

__all__ = [
    "BatchRepository",
    "Batcher",
    "BATCH_STATUS_TRANSITIONS",
    "CaptureResult",
    "CaptureService",
    "SyncClient",
    "build_sync_client",
    "SyncCoordinator",
    "SyncTrigger",
    "EventStore",
    "SyncAgent",
    "SyncOutcome",
    "BatchTransport",
    "HttpBatchTransport",
    "UploadAck",
]
