"""Sync Agent - uploads batches with retry and backoff.

One ``sync_once()`` run:
1. Recovers in-flight batches abandoned by a crash or restart
2. Forms batches from every pending event
3. Uploads each due batch, up to ``concurrency_limit`` at a time

Retry state (``attempt_count``, ``next_retry_at``) is persisted on the batch,
so a restarted process resumes where the previous one stopped.
"""
import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from heroes_analytics.shared.config import SyncConfig
from heroes_analytics.shared.errors import AnalyticsPipelineError, TransientNetworkError
from heroes_analytics.shared.models import Batch
from .batcher import Batcher
from .transport import BatchTransport

logger = logging.getLogger(__name__)


@dataclass
class SyncOutcome:
    """What one sync run did, by batch id."""
    formed: List[str] = field(default_factory=list)
    attempted: List[str] = field(default_factory=list)
    completed: List[str] = field(default_factory=list)
    retry_scheduled: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    rejections: Dict[str, str] = field(default_factory=dict)
    events_synced: int = 0
    needs_attention: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "formed": list(self.formed),
            "attempted": list(self.attempted),
            "completed": list(self.completed),
            "retry_scheduled": list(self.retry_scheduled),
            "failed": list(self.failed),
            "rejections": dict(self.rejections),
            "events_synced": self.events_synced,
            "needs_attention": self.needs_attention,
        }


class SyncAgent:
    """Drives batches through their upload lifecycle."""

    def __init__(
        self,
        batcher: Batcher,
        transport: BatchTransport,
        config: Optional[SyncConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
    ):
        """Initialize sync agent.

        Args:
            batcher: Batch formation and lifecycle
            transport: Upload transport
            config: Retry and concurrency policy
            clock: Returns the current UTC time (injected for testing)
            rng: Jitter source (injected for testing)
        """
        self.batcher = batcher
        self.transport = transport
        self.config = config or SyncConfig()
        self._clock = clock or datetime.utcnow
        self._rng = rng or random.Random()
        self._in_flight: Set[str] = set()

        logger.info(
            "SYNC_AGENT_INITIALIZED",
            extra={
                "max_attempts": self.config.max_attempts,
                "concurrency_limit": self.config.concurrency_limit,
                "upload_timeout_seconds": self.config.upload_timeout_seconds,
            }
        )

    def backoff_delay(self, attempt_count: int) -> timedelta:
        """Delay before the next attempt after ``attempt_count`` attempts.

        min(base * 2^(n-1), max) plus 0-10% jitter.
        """
        exponent = max(attempt_count - 1, 0)
        delay = min(
            self.config.backoff_base_seconds * (2 ** exponent),
            self.config.backoff_max_seconds,
        )
        jitter = delay * self.config.jitter_ratio * self._rng.random()
        return timedelta(seconds=delay + jitter)

    async def sync_once(self) -> SyncOutcome:
        """Run one recovery, batching and upload pass.

        Returns:
            SyncOutcome describing every batch touched

        Raises:
            asyncio.CancelledError: If cancelled; interrupted batches stay
                in_flight and are recovered by a later run
            Exception: The first unexpected transport error, re-raised
                after every sibling upload has finished and the run is logged

        Logs:
            - SYNC_RUN_COMPLETED: Summary counts
        """
        outcome = SyncOutcome()

        self._recover_stale(outcome)

        for _ in range(self.config.max_batches_per_run):
            batch = self.batcher.form_batch(self.config.max_batch_size)
            if batch is None:
                break
            outcome.formed.append(batch.batch_id)

        due = [
            b for b in self.batcher.due_batches(self._clock())
            if b.batch_id not in self._in_flight
        ]
        semaphore = asyncio.Semaphore(self.config.concurrency_limit)
        results = await asyncio.gather(
            *(self._upload(batch, semaphore, outcome) for batch in due),
            return_exceptions=True,
        )
        # Siblings run to completion; the crashed batch stays in_flight
        # and is recovered as stale by a later run
        crashes = [
            (batch.batch_id, result) for batch, result in zip(due, results)
            if isinstance(result, BaseException)
        ]
        for batch_id, error in crashes:
            logger.error(
                "BATCH_UPLOAD_CRASHED",
                extra={"batch_id": batch_id, "error": type(error).__name__}
            )

        outcome.needs_attention = bool(self.batcher.needs_attention())

        logger.info(
            "SYNC_RUN_COMPLETED",
            extra={
                "formed": len(outcome.formed),
                "attempted": len(outcome.attempted),
                "completed": len(outcome.completed),
                "retry_scheduled": len(outcome.retry_scheduled),
                "failed": len(outcome.failed),
                "events_synced": outcome.events_synced,
                "needs_attention": outcome.needs_attention,
            }
        )
        if crashes:
            raise crashes[0][1]
        return outcome

    def _recover_stale(self, outcome: SyncOutcome) -> None:
        timeout = timedelta(seconds=self.config.in_flight_timeout_seconds)
        for batch in self.batcher.stale_in_flight(timeout, self._clock()):
            if batch.batch_id in self._in_flight:
                continue
            logger.warning(
                "IN_FLIGHT_BATCH_RECOVERED",
                extra={
                    "batch_id": batch.batch_id,
                    "attempt_count": batch.attempt_count,
                }
            )
            self._handle_failure(
                batch,
                TransientNetworkError("Upload interrupted", details={"batch_id": batch.batch_id}),
                outcome,
            )

    async def _upload(
        self,
        batch: Batch,
        semaphore: asyncio.Semaphore,
        outcome: SyncOutcome,
    ) -> None:
        async with semaphore:
            if batch.batch_id in self._in_flight:
                return
            self._in_flight.add(batch.batch_id)
            try:
                await self._attempt(batch.batch_id, outcome)
            finally:
                self._in_flight.discard(batch.batch_id)

    async def _attempt(self, batch_id: str, outcome: SyncOutcome) -> None:
        batch = self.batcher.mark_in_flight(batch_id)
        outcome.attempted.append(batch_id)
        payload = self.build_payload(batch)

        if payload["events"]:
            try:
                await asyncio.wait_for(
                    self.transport.upload(payload),
                    timeout=self.config.upload_timeout_seconds,
                )
            except asyncio.TimeoutError:
                self._handle_failure(
                    batch,
                    TransientNetworkError(
                        "Batch upload timed out",
                        details={"batch_id": batch_id},
                    ),
                    outcome,
                )
                return
            except AnalyticsPipelineError as e:
                self._handle_failure(batch, e, outcome)
                return

        self.batcher.mark_completed(batch_id)
        outcome.completed.append(batch_id)
        outcome.events_synced += len(payload["events"])

    def build_payload(self, batch: Batch) -> Dict[str, Any]:
        """Wire form of a batch: id, classroom and its events."""
        events = self.batcher.event_store.get_many(batch.event_ids)
        return {
            "batch_id": batch.batch_id,
            "classroom_id": batch.classroom_id,
            "events": [e.to_payload() for e in events],
        }

    def _handle_failure(
        self,
        batch: Batch,
        error: AnalyticsPipelineError,
        outcome: SyncOutcome,
    ) -> None:
        exhausted = batch.attempt_count >= self.config.max_attempts
        if error.retriable and not exhausted:
            next_retry_at = self._clock() + self.backoff_delay(batch.attempt_count)
            self.batcher.schedule_retry(batch.batch_id, next_retry_at, error.reason_code)
            outcome.retry_scheduled.append(batch.batch_id)
            return

        logger.warning(
            "BATCH_UPLOAD_REJECTED" if not error.retriable else "BATCH_RETRIES_EXHAUSTED",
            extra={
                "batch_id": batch.batch_id,
                "reason_code": error.reason_code,
                "attempt_count": batch.attempt_count,
            }
        )
        self.batcher.mark_failed(batch.batch_id, error.reason_code)
        outcome.failed.append(batch.batch_id)
        outcome.rejections[batch.batch_id] = error.reason_code

    def needs_attention(self) -> List[Batch]:
        """Terminally failed batches awaiting manual resync."""
        return self.batcher.needs_attention()

    def manual_resync(self, batch_id: str) -> Batch:
        """Re-batch a failed batch's events for one more upload cycle."""
        return self.batcher.rebatch_failed(batch_id)
