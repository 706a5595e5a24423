"""Error taxonomy for the analytics pipeline.

Every pipeline error carries a machine-readable ``reason_code`` (used on the
wire between client and ingestion endpoint) and a ``retriable`` flag that the
Sync Agent uses to decide between backoff and terminal failure.
"""
from typing import Any, Dict, Optional


class AnalyticsPipelineError(Exception):
    """Base exception for all pipeline errors."""

    reason_code: str = "internal_error"
    retriable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | details={self.details}"
        return self.message


class ValidationError(AnalyticsPipelineError):
    """Malformed payload or value outside the educational allow-list.

    Non-retriable: the batch is rejected outright.
    """

    reason_code = "validation_failed"


class PIIDetectedError(ValidationError):
    """A free-text field matched a PII pattern."""

    reason_code = "pii_detected"


class UnauthorizedError(AnalyticsPipelineError):
    """Caller is not authorized for the classroom.

    Retriable: the auth collaborator is expected to refresh credentials
    before the next attempt.
    """

    reason_code = "unauthorized"
    retriable = True


class TransientNetworkError(AnalyticsPipelineError):
    """Timeout or connectivity loss during upload."""

    reason_code = "transient_network"
    retriable = True


class ServerUnavailableError(AnalyticsPipelineError):
    """Server answered with a 5xx status."""

    reason_code = "server_unavailable"
    retriable = True


class SaltUnavailableError(AnalyticsPipelineError):
    """Hashing was requested for a day whose salt has been purged.

    Non-retriable: the event must be dropped and logged.
    """

    reason_code = "salt_unavailable"


class CapacityExceededError(AnalyticsPipelineError):
    """Local storage is full and nothing can be evicted."""

    reason_code = "capacity_exceeded"


class InvalidStateTransitionError(AnalyticsPipelineError):
    """A sync-state or batch-status change that is not allowed."""

    reason_code = "invalid_state_transition"


class RetentionError(AnalyticsPipelineError):
    """Retention sweep aborted before any live data was deleted."""

    reason_code = "retention_failed"
