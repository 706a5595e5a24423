"""Retention Engine - ages out old events and purges withdrawn subjects.

Sweep order is archive, verify, delete. A failure before the delete leaves
the live table exactly as it was; a crash after the copy only means the
next sweep re-copies rows that are already archived, which is a no-op.
"""
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from heroes_analytics.shared.config import RetentionConfig
from heroes_analytics.shared.database import RepositoryError
from heroes_analytics.shared.errors import RetentionError, ValidationError
from heroes_analytics.shared.models import RetentionLogEntry
from heroes_analytics.shared.utils import hash_text_for_audit
from heroes_analytics.services.analytics_service import AggregationCache
from heroes_analytics.services.anonymizer import Anonymizer
from heroes_analytics.services.audit_service import AuditAction, AuditEntity, AuditLogger
from heroes_analytics.services.ingestion_service import DurableEventRepository
from heroes_analytics.services.ingestion_service.validator import SUBJECT_HASH_PATTERN
from .archive_repository import ArchiveRepository
from .retention_log import RetentionLogRepository

logger = logging.getLogger(__name__)


def _new_entry_id() -> str:
    return f"ret_{uuid.uuid4().hex[:16]}"


@dataclass(frozen=True)
class RetentionSummary:
    """Result of one retention sweep."""
    archived: int
    deleted: int
    duration_ms: float
    salts_deleted: int
    log_entry: RetentionLogEntry

    def to_dict(self) -> Dict[str, Any]:
        return {
            "archived": self.archived,
            "deleted": self.deleted,
            "duration_ms": round(self.duration_ms, 2),
            "salts_deleted": self.salts_deleted,
            "log_entry": self.log_entry.to_dict(),
        }


@dataclass(frozen=True)
class PurgeResult:
    """Result of purging one anonymous subject from live and archive."""
    anonymous_subject_hash: str
    live_deleted: int
    archive_deleted: int
    remaining: int

    @property
    def complete(self) -> bool:
        return self.remaining == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "live_deleted": self.live_deleted,
            "archive_deleted": self.archive_deleted,
            "remaining": self.remaining,
            "complete": self.complete,
        }


class RetentionEngine:
    """Enforces the data-age policy and consent-driven purges."""

    def __init__(
        self,
        event_repository: DurableEventRepository,
        archive_repository: Optional[ArchiveRepository] = None,
        log_repository: Optional[RetentionLogRepository] = None,
        aggregation_cache: Optional[AggregationCache] = None,
        anonymizer: Optional[Anonymizer] = None,
        audit_logger: Optional[AuditLogger] = None,
        config: Optional[RetentionConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        """Initialize engine.

        Args:
            event_repository: Live durable event store
            archive_repository: Archive store (in-memory if not given)
            log_repository: Retention log (in-memory if not given)
            aggregation_cache: Cache whose windows are expired after deletes
            anonymizer: Shares the salt store with capture; used for salt
                rotation and consent withdrawal
            audit_logger: Compliance audit trail
            config: Policy and salt retention windows
            clock: Returns the current UTC time (injected for testing)
            id_factory: Generates retention log entry ids (injected for testing)
        """
        self.config = config or RetentionConfig()
        self._clock = clock or datetime.utcnow
        self._new_id = id_factory or _new_entry_id
        self.event_repository = event_repository
        self.archive_repository = archive_repository or ArchiveRepository(clock=self._clock)
        self.log_repository = log_repository or RetentionLogRepository()
        self.aggregation_cache = aggregation_cache or AggregationCache(
            event_repository, clock=self._clock
        )
        self.anonymizer = anonymizer or Anonymizer(
            salt_retention_days=self.config.salt_retention_days, clock=self._clock
        )
        self.audit_logger = audit_logger or AuditLogger(clock=self._clock)

        logger.info(
            "RETENTION_ENGINE_INITIALIZED",
            extra={
                "policy_days": self.config.policy_days,
                "salt_retention_days": self.config.salt_retention_days,
            }
        )

    def run_retention_sweep(self, policy_days: Optional[int] = None) -> RetentionSummary:
        """Archive and delete live events older than the policy horizon.

        Args:
            policy_days: Age limit in days (defaults to the configured policy)

        Returns:
            RetentionSummary with counts, duration and the log entry written

        Raises:
            ValidationError: If policy_days is not a positive integer
            RetentionError: If any step before deletion fails; live data is
                left untouched

        Logs:
            - RETENTION_SWEEP_ABORTED: On failure
            - RETENTION_SWEEP_COMPLETED: On success
        """
        days = self.config.policy_days if policy_days is None else policy_days
        if isinstance(days, bool) or not isinstance(days, int) or days < 1:
            raise ValidationError(
                "policy_days must be a positive integer",
                details={"policy_days": str(days)},
            )

        started = time.perf_counter()
        executed_at = self._clock()
        cutoff = executed_at - timedelta(days=days)

        try:
            candidates = self.event_repository.list_older_than(cutoff)
        except RepositoryError as e:
            self._abort(days, "select_failed", str(e))
            raise RetentionError(
                "Candidate selection failed; live data untouched",
                details={"policy_days": days},
            ) from e

        candidate_ids = [e.event_id for e in candidates]
        try:
            self.archive_repository.insert_many(candidates)
            archived_ids = self.archive_repository.existing_ids(candidate_ids)
        except RepositoryError as e:
            self._abort(days, "archive_failed", str(e))
            raise RetentionError(
                "Archive step failed; live data untouched",
                details={"policy_days": days},
            ) from e

        if len(archived_ids) != len(candidate_ids):
            missing = len(candidate_ids) - len(archived_ids)
            self._abort(days, "archive_incomplete", f"{missing} rows missing from archive")
            raise RetentionError(
                "Archive verification failed; live data untouched",
                details={"policy_days": days, "missing_count": missing},
            )

        try:
            deleted = self.event_repository.delete_ids(archived_ids)
        except RepositoryError as e:
            self._abort(days, "delete_failed", str(e))
            raise RetentionError(
                "Delete step failed; archived rows are kept for the next sweep",
                details={"policy_days": days},
            ) from e

        if candidates:
            self.aggregation_cache.invalidate_range(
                min(e.occurred_at for e in candidates),
                max(e.occurred_at for e in candidates),
                classroom_ids=sorted({e.classroom_id for e in candidates}),
            )

        entry = RetentionLogEntry(
            entry_id=self._new_id(),
            table_name=self.event_repository.table_name,
            policy_days=days,
            records_archived=len(archived_ids),
            records_deleted=deleted,
            executed_at=executed_at,
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        self.log_repository.append(entry)

        salts_deleted = self.anonymizer.cleanup_salts()

        self.audit_logger.log(
            AuditAction.RETENTION_SWEEP,
            AuditEntity.SYSTEM,
            entry.entry_id,
            details={
                "policy_days": days,
                "records_archived": entry.records_archived,
                "records_deleted": entry.records_deleted,
            },
        )
        if salts_deleted:
            self.audit_logger.log(
                AuditAction.SALTS_ROTATED,
                AuditEntity.SYSTEM,
                entry.entry_id,
                details={
                    "salts_deleted": salts_deleted,
                    "salt_retention_days": self.anonymizer.salt_retention_days,
                },
            )

        logger.info(
            "RETENTION_SWEEP_COMPLETED",
            extra={
                "entry_id": entry.entry_id,
                "policy_days": days,
                "records_archived": entry.records_archived,
                "records_deleted": deleted,
                "salts_deleted": salts_deleted,
                "duration_ms": round(entry.duration_ms, 2),
            }
        )
        return RetentionSummary(
            archived=entry.records_archived,
            deleted=deleted,
            duration_ms=entry.duration_ms,
            salts_deleted=salts_deleted,
            log_entry=entry,
        )

    def _abort(self, days: int, stage: str, error: str) -> None:
        logger.error(
            "RETENTION_SWEEP_ABORTED",
            extra={"policy_days": days, "stage": stage, "error": error}
        )

    def purge_subject(self, anonymous_subject_hash: str) -> PurgeResult:
        """Delete every live and archived row for one anonymous subject.

        Args:
            anonymous_subject_hash: 64-character hex hash

        Returns:
            PurgeResult; ``complete`` is True when no rows remain anywhere

        Raises:
            ValidationError: If the hash is malformed
            RepositoryError: If a store cannot be reached

        Logs:
            - SUBJECT_PURGED: When no rows remain
            - SUBJECT_PURGE_INCOMPLETE: When rows remain after deletion
        """
        if not isinstance(anonymous_subject_hash, str) or not SUBJECT_HASH_PATTERN.match(
            anonymous_subject_hash
        ):
            raise ValidationError("anonymous_subject_hash must be 64 lowercase hex characters")

        classroom_ids = {
            e.classroom_id for e in self.event_repository.list_subject(anonymous_subject_hash)
        }

        live_deleted = self.event_repository.delete_subject(anonymous_subject_hash)
        archive_deleted = self.archive_repository.delete_subject(anonymous_subject_hash)

        if classroom_ids:
            self.aggregation_cache.invalidate_classrooms(classroom_ids)

        remaining = (
            self.event_repository.count_subject(anonymous_subject_hash)
            + self.archive_repository.count_subject(anonymous_subject_hash)
        )
        result = PurgeResult(
            anonymous_subject_hash=anonymous_subject_hash,
            live_deleted=live_deleted,
            archive_deleted=archive_deleted,
            remaining=remaining,
        )

        # The audit trail must not hold a reference that re-links the subject
        subject_ref = hash_text_for_audit(anonymous_subject_hash)
        self.audit_logger.log(
            AuditAction.SUBJECT_PURGED,
            AuditEntity.SUBJECT,
            subject_ref,
            details=result.to_dict(),
        )

        if result.complete:
            logger.info(
                "SUBJECT_PURGED",
                extra={
                    "subject_ref": subject_ref[:16],
                    "live_deleted": live_deleted,
                    "archive_deleted": archive_deleted,
                }
            )
        else:
            logger.warning(
                "SUBJECT_PURGE_INCOMPLETE",
                extra={"subject_ref": subject_ref[:16], "remaining": remaining}
            )
        return result

    def withdraw_consent(self, subject_identifier: str) -> bool:
        """Purge every retained-day hash of a subject's local identifier.

        Only days whose salt still exists can be linked to the identifier;
        rows hashed with deleted salts are already unlinkable.

        Args:
            subject_identifier: The subject's local identifier

        Returns:
            True if every purge was complete

        Raises:
            ValidationError: If the identifier is empty
        """
        hashes = self.anonymizer.known_hashes(subject_identifier)
        results: List[PurgeResult] = [self.purge_subject(h) for h in hashes.values()]
        complete = all(r.complete for r in results)

        self.audit_logger.log(
            AuditAction.CONSENT_WITHDRAWN,
            AuditEntity.SUBJECT,
            self._new_id(),
            details={
                "salt_days": len(hashes),
                "rows_deleted": sum(r.live_deleted + r.archive_deleted for r in results),
                "complete": complete,
            },
        )
        logger.info(
            "CONSENT_WITHDRAWN",
            extra={"salt_days": len(hashes), "complete": complete}
        )
        return complete
