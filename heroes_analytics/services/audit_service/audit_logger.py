"""Audit logger - hash-chained compliance trail for pipeline actions.

Every ingestion decision, retention sweep, subject purge and salt rotation
emits one entry. Entries only ever reference anonymous hashes, batch ids and
classroom ids.
"""
import hashlib
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

GENESIS_HASH = "genesis"


class AuditAction(Enum):
    """Actions that require audit logging."""
    # Ingestion
    BATCH_INGESTED = "batch_ingested"
    BATCH_REJECTED = "batch_rejected"

    # Lifecycle
    RETENTION_SWEEP = "retention_sweep"
    SUBJECT_PURGED = "subject_purged"
    CONSENT_WITHDRAWN = "consent_withdrawn"
    SALTS_ROTATED = "salts_rotated"


class AuditEntity(Enum):
    """Entity types for audit logging."""
    BATCH = "batch"
    SUBJECT = "subject"
    CLASSROOM = "classroom"
    SYSTEM = "system"


@dataclass(frozen=True)
class AuditEntry:
    """Immutable audit log entry."""
    entry_id: str
    timestamp: datetime
    action: AuditAction
    entity_type: AuditEntity
    entity_id: str  # Anonymous hash, batch id or table name
    actor_id: str
    actor_role: str
    classroom_id: Optional[str]
    details: Dict[str, Any] = field(default_factory=dict)
    previous_hash: str = ""  # Chain to previous entry for verification
    entry_hash: str = ""     # Hash of this entry

    def compute_hash(self) -> str:
        """Compute SHA-256 hash of entry for verification.

        Returns:
            Hex-encoded hash string
        """
        content = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "classroom_id": self.classroom_id,
            "details": self.details,
            "previous_hash": self.previous_hash,
        }
        content_str = json.dumps(content, sort_keys=True, default=str)
        return hashlib.sha256(content_str.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "classroom_id": self.classroom_id,
            "details": dict(self.details),
            "entry_hash": self.entry_hash,
        }


def verify_entries(entries: List[AuditEntry]) -> bool:
    """Verify a chain of entries given in append order.

    Returns:
        True if chain is valid, False if tampered

    Logs:
        - AUDIT_CHAIN_BROKEN: An entry does not point at its predecessor
        - AUDIT_ENTRY_TAMPERED: An entry's stored hash does not match
    """
    expected_prev = GENESIS_HASH
    for entry in entries:
        if entry.previous_hash != expected_prev:
            logger.critical(
                "AUDIT_CHAIN_BROKEN",
                extra={
                    "entry_id": entry.entry_id,
                    "expected": expected_prev[:16],
                    "actual": entry.previous_hash[:16],
                }
            )
            return False

        computed = entry.compute_hash()
        if computed != entry.entry_hash:
            logger.critical(
                "AUDIT_ENTRY_TAMPERED",
                extra={
                    "entry_id": entry.entry_id,
                    "computed": computed[:16],
                    "stored": entry.entry_hash[:16],
                }
            )
            return False

        expected_prev = entry.entry_hash

    logger.info(
        "AUDIT_CHAIN_VERIFIED",
        extra={"entry_count": len(entries)}
    )
    return True


class AuditLogger:
    """Appends chained audit entries to an AuditRepository.

    The chain head is read from the repository on start, so a restarted
    service continues the existing chain.
    """

    def __init__(
        self,
        repository=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize audit logger.

        Args:
            repository: AuditRepository (in-memory if not given)
            clock: Returns the current UTC time (injected for testing)
        """
        from .audit_repository import AuditRepository

        self.repository = repository or AuditRepository()
        self._clock = clock or datetime.utcnow
        self._lock = threading.Lock()

        last = self.repository.last_entry()
        self._last_hash = last.entry_hash if last else GENESIS_HASH

        logger.info("AUDIT_LOGGER_INITIALIZED")

    def log(
        self,
        action: AuditAction,
        entity_type: AuditEntity,
        entity_id: str,
        actor_id: str = "system",
        actor_role: str = "service",
        classroom_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Log an audit entry.

        Args:
            action: Action being audited
            entity_type: Type of entity being acted upon
            entity_id: Identifier of entity (never a raw student identifier)
            actor_id: Service or operator performing the action
            actor_role: Role of actor
            classroom_id: Classroom context
            details: Additional context

        Returns:
            Created AuditEntry

        Raises:
            RepositoryError: If the entry cannot be stored

        Logs:
            - AUDIT_ENTRY_CREATED: After entry is stored
        """
        with self._lock:
            entry = AuditEntry(
                entry_id=f"audit_{uuid.uuid4().hex[:16]}",
                timestamp=self._clock(),
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                actor_id=actor_id,
                actor_role=actor_role,
                classroom_id=classroom_id,
                details=details or {},
                previous_hash=self._last_hash,
            )
            entry = replace(entry, entry_hash=entry.compute_hash())

            self.repository.append(entry)
            self._last_hash = entry.entry_hash

        logger.info(
            "AUDIT_ENTRY_CREATED",
            extra={
                "entry_id": entry.entry_id,
                "action": action.value,
                "entity_type": entity_type.value,
                "classroom_id": classroom_id,
                "entry_hash": entry.entry_hash[:16],  # Truncated for logs
            }
        )
        return entry

    def verify_chain(self) -> bool:
        """Verify integrity of the stored audit chain."""
        return verify_entries(self.repository.all_entries())

    def query(
        self,
        entity_type: Optional[AuditEntity] = None,
        entity_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        classroom_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        """Query audit entries, newest first."""
        return self.repository.query(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            classroom_id=classroom_id,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
        )
