"""Sync coordinator - schedules Sync Agent runs from app triggers.

Triggers (periodic timer, connectivity regained, app foregrounded, manual)
go through a bounded queue. When a run is already queued, further triggers
are dropped: the queued run will pick up everything they would have.
"""
import asyncio
import logging
from enum import Enum
from typing import List, Optional

from .sync_agent import SyncAgent, SyncOutcome

logger = logging.getLogger(__name__)


class SyncTrigger(Enum):
    PERIODIC = "periodic"
    CONNECTIVITY_RESTORED = "connectivity_restored"
    APP_FOREGROUNDED = "app_foregrounded"
    MANUAL = "manual"


class SyncCoordinator:
    """Runs ``sync_once()`` in a background worker task."""

    def __init__(
        self,
        agent: SyncAgent,
        interval_seconds: Optional[float] = None,
        queue_size: int = 1,
        online: bool = True,
    ):
        """Initialize coordinator.

        Args:
            agent: Sync agent to drive
            interval_seconds: Periodic trigger interval (default from agent config,
                0 disables the timer)
            queue_size: Maximum queued triggers
            online: Initial connectivity
        """
        self.agent = agent
        self.interval_seconds = (
            agent.config.sync_interval_seconds if interval_seconds is None else interval_seconds
        )
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._online = online
        self._tasks: List[asyncio.Task] = []
        self.last_outcome: Optional[SyncOutcome] = None
        self.runs = 0

    @property
    def online(self) -> bool:
        return self._online

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def trigger(self, reason: SyncTrigger = SyncTrigger.MANUAL) -> bool:
        """Request a sync run.

        Returns:
            True if queued, False if dropped because a run is already queued
        """
        try:
            self._queue.put_nowait(reason)
        except asyncio.QueueFull:
            logger.debug("SYNC_TRIGGER_DROPPED", extra={"reason": reason.value})
            return False
        logger.debug("SYNC_TRIGGER_QUEUED", extra={"reason": reason.value})
        return True

    def set_connectivity(self, online: bool) -> None:
        """Record a connectivity change; regaining it triggers a sync."""
        regained = online and not self._online
        self._online = online
        logger.info("SYNC_CONNECTIVITY_CHANGED", extra={"online": online})
        if regained:
            self.trigger(SyncTrigger.CONNECTIVITY_RESTORED)

    async def start(self) -> None:
        """Start the worker and, if configured, the periodic timer."""
        if self._tasks:
            return
        self._tasks.append(asyncio.create_task(self._worker()))
        if self.interval_seconds > 0:
            self._tasks.append(asyncio.create_task(self._periodic()))
        logger.info(
            "SYNC_COORDINATOR_STARTED",
            extra={"interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        """Cancel background tasks and wait for them to finish."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("SYNC_COORDINATOR_STOPPED")

    async def drain(self) -> None:
        """Wait until every queued trigger has been processed."""
        await self._queue.join()

    async def _worker(self) -> None:
        while True:
            reason = await self._queue.get()
            try:
                if not self._online:
                    logger.info("SYNC_SKIPPED_OFFLINE", extra={"reason": reason.value})
                    continue
                self.last_outcome = await self.agent.sync_once()
                self.runs += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("SYNC_RUN_FAILED", extra={"reason": reason.value})
            finally:
                self._queue.task_done()

    async def _periodic(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            self.trigger(SyncTrigger.PERIODIC)
