"""Local Event Store - durable record of captured interaction events.

Runs on the device, owned by exactly one Batcher/Sync Agent pair. Every
write passes the educational allow-list and the PII Guard first; nothing
that fails either check is ever stored.

State changes follow SYNC_STATE_TRANSITIONS and are applied all-or-nothing
across the requested event ids.
"""
import dataclasses
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from psycopg2.extras import Json

from heroes_analytics.shared.database import (
    BaseRepository,
    ConnectionManager,
    DuplicateError,
    NotFoundError,
    RepositoryError,
)
from heroes_analytics.shared.errors import (
    CapacityExceededError,
    InvalidStateTransitionError,
    ValidationError,
)
from heroes_analytics.shared.models import (
    BehavioralCategory,
    InteractionEvent,
    SyncState,
    SYNC_STATE_TRANSITIONS,
)
from heroes_analytics.shared.utils import (
    PIIGuard,
    validate_interaction_type,
    validate_metadata,
)

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 10000

# Events in these states belong to an active batch and are never evicted
# or purged out from under it
IN_BATCH_STATES = (SyncState.BATCHED, SyncState.UPLOADING)


class EventStore(BaseRepository[InteractionEvent]):
    """Device-local store for ``local_interaction_events``."""

    id_column = "event_id"

    def __init__(
        self,
        connection_manager: Optional[ConnectionManager] = None,
        capacity: int = DEFAULT_CAPACITY,
        pii_guard: Optional[PIIGuard] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize event store.

        Args:
            connection_manager: Database connection (in-memory if None)
            capacity: Maximum stored events before eviction
            pii_guard: PII scanner applied on append
            clock: Returns the current UTC time (injected for testing)
        """
        super().__init__(connection_manager, "local_interaction_events")
        self.capacity = capacity
        self.pii_guard = pii_guard or PIIGuard()
        self._clock = clock or datetime.utcnow

    def _row_to_entity(self, row: tuple) -> InteractionEvent:
        return InteractionEvent(
            event_id=row[0],
            anonymous_subject_hash=row[1],
            classroom_id=row[2],
            lesson_id=row[3],
            category=BehavioralCategory(row[4]),
            interaction_type=row[5],
            score=row[6],
            occurred_at=row[7],
            metadata=row[8] or {},
            sync_state=SyncState(row[9]),
            attempt_count=row[10],
            last_attempt_at=row[11],
            batch_id=row[12],
        )

    def _entity_to_params(self, entity: InteractionEvent) -> Dict[str, Any]:
        return {
            "event_id": entity.event_id,
            "anonymous_subject_hash": entity.anonymous_subject_hash,
            "classroom_id": entity.classroom_id,
            "lesson_id": entity.lesson_id,
            "category": entity.category.value,
            "interaction_type": entity.interaction_type,
            "score": entity.score,
            "occurred_at": entity.occurred_at,
            "metadata": Json(entity.metadata),
            "sync_state": entity.sync_state.value,
            "attempt_count": entity.attempt_count,
            "last_attempt_at": entity.last_attempt_at,
            "batch_id": entity.batch_id,
        }

    def _entity_id(self, entity: InteractionEvent) -> str:
        return entity.event_id

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(self, event: InteractionEvent) -> str:
        """Validate and store a newly captured event.

        Args:
            event: Event in the captured state

        Returns:
            The stored event_id

        Raises:
            ValidationError: Empty identifier, or interaction type or metadata
                not allowed
            PIIDetectedError: A free-text field matches a PII pattern
            InvalidStateTransitionError: Event is not in the captured state
            DuplicateError: event_id already stored
            CapacityExceededError: Store is full and nothing can be evicted

        Logs:
            - EVENT_STORE_CAPACITY_EXCEEDED: Before evicting old events
            - EVENT_APPENDED: After the event is stored
        """
        self._validate(event)

        if self.uses_database:
            self._append_postgres(event)
        else:
            self._append_memory(event)

        logger.info(
            "EVENT_APPENDED",
            extra={
                "event_id": event.event_id,
                "classroom_id": event.classroom_id,
                "category": event.category.value,
            }
        )
        return event.event_id

    def _validate(self, event: InteractionEvent) -> None:
        for field_name in ("event_id", "classroom_id", "lesson_id"):
            value = getattr(event, field_name)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(
                    f"{field_name} must be a non-empty string",
                    details={"field": field_name},
                )
        validate_interaction_type(event.interaction_type)
        validate_metadata(event.metadata)
        self.pii_guard.ensure_clean(
            {
                "event_id": event.event_id,
                "classroom_id": event.classroom_id,
                "lesson_id": event.lesson_id,
                "interaction_type": event.interaction_type,
                **{f"metadata.{k}": v for k, v in event.metadata.items()},
            },
            context="event_store.append",
        )
        if event.sync_state != SyncState.CAPTURED:
            raise InvalidStateTransitionError(
                "Only captured events can be appended",
                details={"event_id": event.event_id, "state": event.sync_state.value},
            )

    def _append_memory(self, event: InteractionEvent) -> None:
        with self._lock:
            if event.event_id in self._memory:
                raise DuplicateError(f"Event {event.event_id} already stored")

            overflow = len(self._memory) - self.capacity + 1
            if overflow > 0:
                victims = self._eviction_order(list(self._memory.values()))[:overflow]
                self._log_capacity_exceeded(overflow, len(victims))
                if len(victims) < overflow:
                    raise CapacityExceededError(
                        "Local event store is full",
                        details={"capacity": self.capacity},
                    )
                for victim in victims:
                    del self._memory[victim.event_id]

            self._memory[event.event_id] = event

    def _append_postgres(self, event: InteractionEvent) -> None:
        overflow = self.count() - self.capacity + 1
        if overflow > 0:
            evicted = self._execute(
                """
                DELETE FROM local_interaction_events WHERE event_id IN (
                    SELECT event_id FROM local_interaction_events
                    WHERE sync_state NOT IN (%s, %s)
                    ORDER BY CASE WHEN sync_state = %s THEN 0 ELSE 1 END, occurred_at
                    LIMIT %s
                )
                """,
                (
                    SyncState.BATCHED.value,
                    SyncState.UPLOADING.value,
                    SyncState.SYNCED.value,
                    overflow,
                ),
            )
            self._log_capacity_exceeded(overflow, evicted)
            if evicted < overflow:
                raise CapacityExceededError(
                    "Local event store is full",
                    details={"capacity": self.capacity},
                )

        params = self._entity_to_params(event)
        inserted = self._execute(
            f"""
            INSERT INTO local_interaction_events ({", ".join(params)})
            VALUES ({", ".join(["%s"] * len(params))})
            ON CONFLICT (event_id) DO NOTHING
            """,
            list(params.values()),
        )
        if not inserted:
            raise DuplicateError(f"Event {event.event_id} already stored")

    @staticmethod
    def _eviction_order(events: List[InteractionEvent]) -> List[InteractionEvent]:
        """Synced events first, then the oldest captured or failed ones."""
        evictable = [e for e in events if e.sync_state not in IN_BATCH_STATES]
        return sorted(
            evictable,
            key=lambda e: (e.sync_state != SyncState.SYNCED, e.occurred_at),
        )

    def _log_capacity_exceeded(self, needed: int, evicted: int) -> None:
        logger.warning(
            "EVENT_STORE_CAPACITY_EXCEEDED",
            extra={
                "capacity": self.capacity,
                "needed": needed,
                "evicted": evicted,
            }
        )

    def mark_state(
        self,
        event_ids: Sequence[str],
        new_state: SyncState,
        batch_id: Optional[str] = None,
    ) -> int:
        """Move events to a new sync state.

        Either every event moves or none does. Moving to UPLOADING records
        an attempt. Moving to BATCHED requires ``batch_id``.

        Returns:
            Number of events updated

        Raises:
            NotFoundError: An event_id is not stored
            InvalidStateTransitionError: A transition is not allowed
        """
        ids = list(dict.fromkeys(event_ids))
        if not ids:
            return 0
        if new_state == SyncState.BATCHED and batch_id is None:
            raise InvalidStateTransitionError("Batching requires a batch_id")

        now = self._clock()
        if self.uses_database:
            self._mark_state_postgres(ids, new_state, batch_id, now)
        else:
            with self._lock:
                current = {i: self._memory[i].sync_state for i in ids if i in self._memory}
                self._check_transitions(ids, current, new_state)
                for event_id in ids:
                    self._memory[event_id] = self._transition(
                        self._memory[event_id], new_state, batch_id, now
                    )

        logger.debug(
            "EVENT_STATE_CHANGED",
            extra={
                "count": len(ids),
                "new_state": new_state.value,
                "batch_id": batch_id,
            }
        )
        return len(ids)

    def _mark_state_postgres(
        self,
        ids: List[str],
        new_state: SyncState,
        batch_id: Optional[str],
        now: datetime,
    ) -> None:
        uploading = new_state == SyncState.UPLOADING
        try:
            with self.connection_manager.transaction() as cur:
                cur.execute(
                    "SELECT event_id, sync_state FROM local_interaction_events "
                    "WHERE event_id = ANY(%s) FOR UPDATE",
                    (ids,),
                )
                current = {row[0]: SyncState(row[1]) for row in cur.fetchall()}
                self._check_transitions(ids, current, new_state)
                cur.execute(
                    """
                    UPDATE local_interaction_events
                    SET sync_state = %s,
                        batch_id = COALESCE(%s, batch_id),
                        attempt_count = attempt_count + %s,
                        last_attempt_at = CASE WHEN %s THEN %s ELSE last_attempt_at END
                    WHERE event_id = ANY(%s)
                    """,
                    (new_state.value, batch_id, int(uploading), uploading, now, ids),
                )
        except (RepositoryError, InvalidStateTransitionError):
            raise
        except Exception as e:
            logger.error(
                "EVENT_STATE_UPDATE_FAILED",
                extra={"event_count": len(ids), "error": str(e)}
            )
            raise RepositoryError(f"State update failed: {e}") from e

    @staticmethod
    def _check_transitions(
        ids: List[str],
        current: Dict[str, SyncState],
        new_state: SyncState,
    ) -> None:
        missing = [i for i in ids if i not in current]
        if missing:
            raise NotFoundError(f"Events not found: {missing[:5]}")

        invalid = sorted({
            current[i].value for i in ids
            if new_state not in SYNC_STATE_TRANSITIONS[current[i]]
        })
        if invalid:
            raise InvalidStateTransitionError(
                "Sync state transition not allowed",
                details={"from": invalid, "to": new_state.value},
            )

    @staticmethod
    def _transition(
        event: InteractionEvent,
        new_state: SyncState,
        batch_id: Optional[str],
        now: datetime,
    ) -> InteractionEvent:
        changes: Dict[str, Any] = {"sync_state": new_state}
        if batch_id is not None:
            changes["batch_id"] = batch_id
        if new_state == SyncState.UPLOADING:
            changes["attempt_count"] = event.attempt_count + 1
            changes["last_attempt_at"] = now
        return dataclasses.replace(event, **changes)

    def purge_older_than(self, cutoff: datetime) -> int:
        """Delete events that occurred before ``cutoff``.

        Events in an active batch are kept until the batch resolves.

        Returns:
            Number of events deleted
        """
        if self.uses_database:
            deleted = self._execute(
                "DELETE FROM local_interaction_events "
                "WHERE occurred_at < %s AND sync_state NOT IN (%s, %s)",
                (cutoff, SyncState.BATCHED.value, SyncState.UPLOADING.value),
            )
        else:
            with self._lock:
                stale = [
                    e.event_id for e in self._memory.values()
                    if e.occurred_at < cutoff and e.sync_state not in IN_BATCH_STATES
                ]
                for event_id in stale:
                    del self._memory[event_id]
            deleted = len(stale)

        logger.info(
            "LOCAL_EVENTS_PURGED",
            extra={"cutoff": cutoff.isoformat(), "deleted": deleted}
        )
        return deleted

    def delete_subject(self, anonymous_subject_hash: str) -> int:
        """Remove every local event of one anonymous subject."""
        if self.uses_database:
            return self._execute(
                "DELETE FROM local_interaction_events WHERE anonymous_subject_hash = %s",
                (anonymous_subject_hash,),
            )

        with self._lock:
            matches = [
                e.event_id for e in self._memory.values()
                if e.anonymous_subject_hash == anonymous_subject_hash
            ]
            for event_id in matches:
                del self._memory[event_id]
        return len(matches)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_pending(
        self,
        limit: int,
        classroom_id: Optional[str] = None,
    ) -> List[InteractionEvent]:
        """Captured events not yet in any batch, oldest first.

        Args:
            limit: Maximum events to return
            classroom_id: Restrict to one classroom
        """
        if limit <= 0:
            return []
        return self._pending_page(limit, classroom_id, after=None)

    def iter_pending(
        self,
        chunk_size: int = 100,
        classroom_id: Optional[str] = None,
    ) -> Iterator[InteractionEvent]:
        """Lazily iterate pending events in pages, oldest first.

        Each call starts a fresh pass over the current pending set.
        """
        after = None
        while True:
            page = self._pending_page(chunk_size, classroom_id, after)
            yield from page
            if len(page) < chunk_size:
                return
            last = page[-1]
            after = (last.occurred_at, last.event_id)

    def _pending_page(
        self,
        limit: int,
        classroom_id: Optional[str],
        after: Optional[tuple],
    ) -> List[InteractionEvent]:
        if not self.uses_database:
            with self._lock:
                events = [
                    e for e in self._memory.values()
                    if e.sync_state == SyncState.CAPTURED
                    and (classroom_id is None or e.classroom_id == classroom_id)
                ]
            events.sort(key=lambda e: (e.occurred_at, e.event_id))
            if after is not None:
                events = [e for e in events if (e.occurred_at, e.event_id) > after]
            return events[:limit]

        query = "SELECT * FROM local_interaction_events WHERE sync_state = %s"
        params: List[Any] = [SyncState.CAPTURED.value]
        if classroom_id is not None:
            query += " AND classroom_id = %s"
            params.append(classroom_id)
        if after is not None:
            query += " AND (occurred_at, event_id) > (%s, %s)"
            params.extend(after)
        query += " ORDER BY occurred_at, event_id LIMIT %s"
        params.append(limit)
        return self._fetchall(query, params)

    def get_many(self, event_ids: Sequence[str]) -> List[InteractionEvent]:
        """Fetch events by id, preserving the requested order."""
        ids = list(event_ids)
        if not self.uses_database:
            with self._lock:
                return [self._memory[i] for i in ids if i in self._memory]

        found = {
            e.event_id: e for e in self._fetchall(
                "SELECT * FROM local_interaction_events WHERE event_id = ANY(%s)",
                (ids,),
            )
        }
        return [found[i] for i in ids if i in found]

    def count(self, state: Optional[SyncState] = None) -> int:
        """Count stored events, optionally in one sync state."""
        if state is None:
            return super().count()
        if not self.uses_database:
            with self._lock:
                return sum(1 for e in self._memory.values() if e.sync_state == state)
        return int(self._fetch_scalar(
            "SELECT COUNT(*) FROM local_interaction_events WHERE sync_state = %s",
            (state.value,),
        ) or 0)
