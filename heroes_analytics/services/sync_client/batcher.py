"""Batcher - groups pending events into fixed upload batches.

A batch belongs to one classroom and its membership never changes after
formation, so a retry always resends exactly the same events. The Batcher
also owns every batch status change; the Sync Agent decides *which* change
to make and calls the matching method here.

Batch lifecycle:
    pending -> in_flight -> completed
                         -> pending (retriable failure, after backoff)
                         -> failed  (non-retriable, or attempts exhausted)
"""
import dataclasses
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from heroes_analytics.shared.config import SyncConfig
from heroes_analytics.shared.errors import InvalidStateTransitionError
from heroes_analytics.shared.models import Batch, BatchStatus, SyncState
from .batch_repository import BatchRepository
from .event_store import EventStore

logger = logging.getLogger(__name__)


BATCH_STATUS_TRANSITIONS: Dict[BatchStatus, FrozenSet[BatchStatus]] = {
    BatchStatus.PENDING: frozenset({BatchStatus.IN_FLIGHT}),
    BatchStatus.IN_FLIGHT: frozenset({
        BatchStatus.COMPLETED,
        BatchStatus.PENDING,
        BatchStatus.FAILED,
    }),
    BatchStatus.COMPLETED: frozenset(),
    BatchStatus.FAILED: frozenset(),
}

# Health report thresholds
UNHEALTHY_FAILED_BATCHES = 10
CONCERNING_PENDING_BATCHES = 20
BACKLOG_PENDING_EVENTS = 1000


def _new_batch_id() -> str:
    return f"batch_{uuid.uuid4().hex[:16]}"


class Batcher:
    """Forms batches and tracks their lifecycle."""

    def __init__(
        self,
        event_store: EventStore,
        batch_repository: Optional[BatchRepository] = None,
        config: Optional[SyncConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        """Initialize batcher.

        Args:
            event_store: Local event store
            batch_repository: Batch table (in-memory if not given)
            config: Sync policy
            clock: Returns the current UTC time (injected for testing)
            id_factory: Generates batch ids (injected for testing)
        """
        self.event_store = event_store
        self.batch_repository = batch_repository or BatchRepository()
        self.config = config or SyncConfig()
        self._clock = clock or datetime.utcnow
        self._new_id = id_factory or _new_batch_id

    def form_batch(self, max_size: Optional[int] = None) -> Optional[Batch]:
        """Group pending events of one classroom into a new pending batch.

        The classroom is the one owning the oldest pending event.

        Args:
            max_size: Maximum events in the batch (default from config)

        Returns:
            The new batch, or None if nothing is pending

        Logs:
            - BATCH_FORMED: After the batch is persisted
        """
        size = max_size if max_size is not None else self.config.max_batch_size
        if size <= 0:
            raise ValueError(f"max_size must be positive, got {size}")

        oldest = self.event_store.list_pending(1)
        if not oldest:
            return None

        classroom_id = oldest[0].classroom_id
        events = self.event_store.list_pending(size, classroom_id=classroom_id)
        batch = Batch(
            batch_id=self._new_id(),
            classroom_id=classroom_id,
            event_ids=tuple(e.event_id for e in events),
            status=BatchStatus.PENDING,
            created_at=self._clock(),
        )

        self.batch_repository.save(batch)
        try:
            self.event_store.mark_state(batch.event_ids, SyncState.BATCHED, batch.batch_id)
        except Exception:
            self.batch_repository.delete(batch.batch_id)
            raise

        logger.info(
            "BATCH_FORMED",
            extra={
                "batch_id": batch.batch_id,
                "classroom_id": classroom_id,
                "event_count": batch.size,
            }
        )
        return batch

    # ------------------------------------------------------------------
    # Lifecycle transitions
    # ------------------------------------------------------------------

    def get(self, batch_id: str) -> Batch:
        return self.batch_repository.get(batch_id)

    def due_batches(self, now: Optional[datetime] = None) -> List[Batch]:
        return self.batch_repository.list_due(now or self._clock())

    def stale_in_flight(self, timeout: timedelta, now: Optional[datetime] = None) -> List[Batch]:
        """In-flight batches whose last attempt started before ``now - timeout``.

        These were interrupted (crash or restart) and never resolved.
        """
        cutoff = (now or self._clock()) - timeout
        return [
            b for b in self.batch_repository.list_by_status(BatchStatus.IN_FLIGHT)
            if b.last_attempt_at is None or b.last_attempt_at < cutoff
        ]

    def mark_in_flight(self, batch_id: str) -> Batch:
        """Start an upload attempt."""
        batch = self._transition(
            batch_id,
            BatchStatus.IN_FLIGHT,
            attempt_increment=1,
            last_attempt_at=self._clock(),
        )
        self._move_events(batch, (SyncState.BATCHED,), SyncState.UPLOADING)
        return batch

    def mark_completed(self, batch_id: str) -> Batch:
        """Server acknowledged every event."""
        now = self._clock()
        batch = self._checked(batch_id, BatchStatus.COMPLETED)
        self._move_events(batch, (SyncState.UPLOADING,), SyncState.SYNCED)
        batch = self._transition(
            batch_id,
            BatchStatus.COMPLETED,
            completed_at=now,
            next_retry_at=None,
            last_error=None,
        )
        logger.info(
            "BATCH_COMPLETED",
            extra={
                "batch_id": batch_id,
                "attempt_count": batch.attempt_count,
                "event_count": batch.size,
            }
        )
        return batch

    def schedule_retry(self, batch_id: str, next_retry_at: datetime, error: str) -> Batch:
        """Return an interrupted or failed attempt to pending with a backoff."""
        batch = self._checked(batch_id, BatchStatus.PENDING)
        self._move_events(batch, (SyncState.UPLOADING,), SyncState.BATCHED)
        batch = self._transition(
            batch_id,
            BatchStatus.PENDING,
            next_retry_at=next_retry_at,
            last_error=error,
        )
        logger.info(
            "BATCH_RETRY_SCHEDULED",
            extra={
                "batch_id": batch_id,
                "attempt_count": batch.attempt_count,
                "next_retry_at": next_retry_at.isoformat(),
                "reason": error,
            }
        )
        return batch

    def mark_failed(self, batch_id: str, error: str) -> Batch:
        """Terminal failure. Events become eligible for one manual re-batch."""
        batch = self._checked(batch_id, BatchStatus.FAILED)
        self._move_events(batch, (SyncState.UPLOADING, SyncState.BATCHED), SyncState.FAILED)
        batch = self._transition(
            batch_id,
            BatchStatus.FAILED,
            next_retry_at=None,
            last_error=error,
        )
        logger.warning(
            "BATCH_FAILED",
            extra={
                "batch_id": batch_id,
                "attempt_count": batch.attempt_count,
                "reason": error,
            }
        )
        return batch

    def _transition(
        self,
        batch_id: str,
        new_status: BatchStatus,
        attempt_increment: int = 0,
        **changes: Any,
    ) -> Batch:
        current = self._checked(batch_id, new_status)
        updated = dataclasses.replace(
            current,
            status=new_status,
            attempt_count=current.attempt_count + attempt_increment,
            **changes,
        )
        return self.batch_repository.save(updated)

    def _checked(self, batch_id: str, new_status: BatchStatus) -> Batch:
        """Load a batch and verify it may move to ``new_status``."""
        current = self.get(batch_id)
        if new_status not in BATCH_STATUS_TRANSITIONS[current.status]:
            raise InvalidStateTransitionError(
                "Batch status transition not allowed",
                details={
                    "batch_id": batch_id,
                    "from": current.status.value,
                    "to": new_status.value,
                },
            )
        return current

    def _move_events(self, batch: Batch, from_states: tuple, to_state: SyncState) -> None:
        for state in from_states:
            ids = [
                e.event_id for e in self.event_store.get_many(batch.event_ids)
                if e.sync_state == state
            ]
            self.event_store.mark_state(ids, to_state, batch.batch_id)

    # ------------------------------------------------------------------
    # Failed batches and maintenance
    # ------------------------------------------------------------------

    def needs_attention(self) -> List[Batch]:
        """Terminally failed batches that have not been re-batched."""
        return [
            b for b in self.batch_repository.list_by_status(BatchStatus.FAILED)
            if self.batch_repository.find_retry_of(b.batch_id) is None
        ]

    def rebatch_failed(self, batch_id: str) -> Batch:
        """Give a terminally failed batch's events one manual re-batch.

        The new batch carries the same events and ``retry_of`` pointing at
        the failed batch. A re-batch can itself never be re-batched.

        Raises:
            InvalidStateTransitionError: Resync disabled, batch not failed,
                or its single manual attempt was already used
            NotFoundError: Unknown batch_id
        """
        if not self.config.allow_manual_resync:
            raise InvalidStateTransitionError(
                "Manual resync is disabled",
                details={"batch_id": batch_id},
            )

        failed = self.get(batch_id)
        if failed.status != BatchStatus.FAILED:
            raise InvalidStateTransitionError(
                "Only failed batches can be re-batched",
                details={"batch_id": batch_id, "status": failed.status.value},
            )
        if failed.retry_of is not None or self.batch_repository.find_retry_of(batch_id):
            raise InvalidStateTransitionError(
                "Manual resync already used for this batch",
                details={"batch_id": batch_id},
            )

        event_ids = tuple(
            e.event_id for e in self.event_store.get_many(failed.event_ids)
            if e.sync_state == SyncState.FAILED
        )
        if not event_ids:
            raise InvalidStateTransitionError(
                "Failed batch has no events left to resync",
                details={"batch_id": batch_id},
            )

        batch = Batch(
            batch_id=self._new_id(),
            classroom_id=failed.classroom_id,
            event_ids=event_ids,
            status=BatchStatus.PENDING,
            created_at=self._clock(),
            retry_of=batch_id,
        )
        self.batch_repository.save(batch)
        self.event_store.mark_state(event_ids, SyncState.BATCHED, batch.batch_id)

        logger.info(
            "BATCH_MANUAL_RESYNC",
            extra={
                "batch_id": batch.batch_id,
                "retry_of": batch_id,
                "event_count": batch.size,
            }
        )
        return batch

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Delete completed batches past the grace window and old failed ones.

        Returns:
            Number of batches deleted
        """
        now = now or self._clock()
        deleted = self.batch_repository.delete_finished(
            completed_before=now - timedelta(days=self.config.completed_batch_grace_days),
            failed_before=now - timedelta(days=self.config.failed_batch_retention_days),
        )
        logger.info("BATCH_CLEANUP_COMPLETED", extra={"deleted": deleted})
        return deleted

    def health_report(self) -> Dict[str, Any]:
        """Summarize the sync backlog for diagnostics."""
        counts = self.batch_repository.count_by_status()
        pending = counts[BatchStatus.PENDING] + counts[BatchStatus.IN_FLIGHT]
        failed = counts[BatchStatus.FAILED]
        pending_events = self.event_store.count(SyncState.CAPTURED)

        if failed > UNHEALTHY_FAILED_BATCHES:
            status = "unhealthy"
        elif pending > CONCERNING_PENDING_BATCHES:
            status = "concerning"
        elif pending_events > BACKLOG_PENDING_EVENTS:
            status = "backlog"
        else:
            status = "healthy"

        recommendations = []
        if failed > UNHEALTHY_FAILED_BATCHES:
            recommendations.append("High failure rate detected. Check network connectivity.")
        if pending > CONCERNING_PENDING_BATCHES:
            recommendations.append("Large number of pending batches. Consider increasing sync frequency.")
        if pending_events > BACKLOG_PENDING_EVENTS:
            recommendations.append("Event backlog detected. Enable more aggressive batching.")

        return {
            "status": status,
            "pending_batches": pending,
            "failed_batches": failed,
            "completed_batches": counts[BatchStatus.COMPLETED],
            "pending_events": pending_events,
            "recommendations": recommendations,
        }
