"""Capture service - records an interaction from the app UI.

Capture is best-effort and must never block or crash the classroom UI:
every failure is turned into a rejected ``CaptureResult`` and logged.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from heroes_analytics.shared.database import DuplicateError, RepositoryError
from heroes_analytics.shared.errors import (
    AnalyticsPipelineError,
    CapacityExceededError,
    SaltUnavailableError,
)
from heroes_analytics.shared.models import InteractionEvent, parse_timestamp
from heroes_analytics.shared.utils import validate_category, validate_metadata, validate_score
from heroes_analytics.services.anonymizer import Anonymizer
from .event_store import EventStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureResult:
    """Rejected-write signal for the UI layer."""
    accepted: bool
    event_id: Optional[str] = None
    reason_code: Optional[str] = None


def _new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


class CaptureService:
    """Stamps the anonymous hash on an interaction and stores it locally."""

    def __init__(
        self,
        anonymizer: Anonymizer,
        event_store: EventStore,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.anonymizer = anonymizer
        self.event_store = event_store
        self._clock = clock or datetime.utcnow
        self._new_id = id_factory or _new_event_id

    def capture(
        self,
        subject_identifier: str,
        classroom_id: str,
        lesson_id: str,
        category: Any,
        interaction_type: str,
        score: int,
        metadata: Optional[Dict[str, Any]] = None,
        occurred_at: Optional[Any] = None,
    ) -> CaptureResult:
        """Record one interaction. Never raises.

        The subject identifier is hashed for the day the interaction
        occurred and then discarded.

        Returns:
            CaptureResult with the event_id, or the rejection reason_code

        Logs:
            - CAPTURE_REJECTED: Allow-list, PII or duplicate rejection
            - CAPTURE_DROPPED: Salt for the interaction day was purged
            - CAPTURE_STORAGE_FULL: Capacity exceeded with nothing evictable
        """
        try:
            validate_metadata(metadata)
            when = parse_timestamp(occurred_at) if occurred_at is not None else self._clock()
            event = InteractionEvent(
                event_id=self._new_id(),
                anonymous_subject_hash=self.anonymizer.hash(subject_identifier, when.date()),
                classroom_id=classroom_id,
                lesson_id=lesson_id,
                category=validate_category(category),
                interaction_type=interaction_type,
                score=validate_score(score),
                occurred_at=when,
                metadata=dict(metadata or {}),
            )
            event_id = self.event_store.append(event)

        except SaltUnavailableError as e:
            logger.warning(
                "CAPTURE_DROPPED",
                extra={"classroom_id": classroom_id, "reason_code": e.reason_code}
            )
            return CaptureResult(accepted=False, reason_code=e.reason_code)

        except CapacityExceededError as e:
            logger.error(
                "CAPTURE_STORAGE_FULL",
                extra={"classroom_id": classroom_id, "reason_code": e.reason_code}
            )
            return CaptureResult(accepted=False, reason_code=e.reason_code)

        except AnalyticsPipelineError as e:
            logger.warning(
                "CAPTURE_REJECTED",
                extra={"classroom_id": classroom_id, "reason_code": e.reason_code}
            )
            return CaptureResult(accepted=False, reason_code=e.reason_code)

        except DuplicateError:
            logger.warning(
                "CAPTURE_REJECTED",
                extra={"classroom_id": classroom_id, "reason_code": "duplicate_event"}
            )
            return CaptureResult(accepted=False, reason_code="duplicate_event")

        except (RepositoryError, TypeError, ValueError) as e:
            logger.error(
                "CAPTURE_FAILED",
                extra={"classroom_id": classroom_id, "error": type(e).__name__}
            )
            return CaptureResult(accepted=False, reason_code="capture_failed")

        return CaptureResult(accepted=True, event_id=event_id)
