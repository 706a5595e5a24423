"""Ingestion Service HTTP Handler - batch upload endpoint.

Validates and persists batches uploaded by classroom devices. A batch is
accepted or rejected as a whole; re-delivering a batch that was already
ingested is a no-op success.

Endpoints:
- GET /health - Health check
- GET /ready - Readiness check (database reachable)
- POST /v1/batches - Upload one batch
"""
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from flask import Flask, jsonify, request

from heroes_analytics.shared.config import AggregationConfig, IngestionConfig
from heroes_analytics.shared.database import (
    ConnectionManager,
    RepositoryError,
    connection_manager_from_env,
)
from heroes_analytics.shared.errors import (
    AnalyticsPipelineError,
    ServerUnavailableError,
    UnauthorizedError,
)
from heroes_analytics.services.analytics_service import AggregationCache, WindowRepository
from heroes_analytics.services.audit_service import (
    AuditAction,
    AuditEntity,
    AuditLogger,
    AuditRepository,
)
from .event_repository import DurableEventRepository, IngestedBatch, IngestedBatchRepository
from .validator import BatchValidator

logger = logging.getLogger(__name__)

app = Flask(__name__)

Authorizer = Callable[[Optional[str], str], bool]


@dataclass(frozen=True)
class IngestResult:
    """Outcome of one batch upload."""
    success: bool
    batch_id: Optional[str]
    accepted_count: int = 0
    stored_count: int = 0
    duplicate_batch: bool = False
    reason_code: Optional[str] = None
    error: Optional[str] = None

    @property
    def http_status(self) -> int:
        if self.success:
            return 200
        if self.reason_code == UnauthorizedError.reason_code:
            return 401
        return 400

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {
                "status": "accepted",
                "batch_id": self.batch_id,
                "accepted_count": self.accepted_count,
                "stored_count": self.stored_count,
                "duplicate_batch": self.duplicate_batch,
            }
        return {
            "status": "rejected",
            "batch_id": self.batch_id,
            "reason_code": self.reason_code,
            "error": self.error,
        }


class IngestionHandler:
    """Validates, persists and acknowledges uploaded batches."""

    def __init__(
        self,
        event_repository: Optional[DurableEventRepository] = None,
        batch_repository: Optional[IngestedBatchRepository] = None,
        aggregation_cache: Optional[AggregationCache] = None,
        validator: Optional[BatchValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
        authorizer: Optional[Authorizer] = None,
        config: Optional[IngestionConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize handler with dependencies.

        Args:
            event_repository: Durable event store (in-memory if not given)
            batch_repository: Ingested batch ids (in-memory if not given)
            aggregation_cache: Cache to invalidate after new data
            validator: Batch validator
            audit_logger: Compliance audit trail
            authorizer: ``(token, classroom_id) -> bool`` from the auth layer
            config: Ingestion limits and authorization policy
            clock: Returns the current UTC time (injected for testing)
        """
        self.config = config or IngestionConfig()
        self._clock = clock or datetime.utcnow
        self.event_repository = event_repository or DurableEventRepository(clock=self._clock)
        self.batch_repository = batch_repository or IngestedBatchRepository()
        self.aggregation_cache = aggregation_cache or AggregationCache(
            self.event_repository, clock=self._clock
        )
        self.validator = validator or BatchValidator(self.config, clock=self._clock)
        self.audit_logger = audit_logger or AuditLogger(clock=self._clock)
        self.authorizer = authorizer

        logger.info(
            "INGESTION_HANDLER_INITIALIZED",
            extra={
                "max_events_per_batch": self.config.max_events_per_batch,
                "require_authorization": self.config.require_authorization,
                "authorizer_configured": authorizer is not None,
            }
        )

    def ingest(self, payload: Any, token: Optional[str] = None) -> IngestResult:
        """Validate and persist one batch.

        Args:
            payload: Decoded batch JSON
            token: Bearer token of the caller

        Returns:
            IngestResult; rejections carry a reason_code

        Raises:
            ServerUnavailableError: If the durable store cannot be written
                (the client retries with backoff)

        Logs:
            - BATCH_INGESTED: After events are persisted
            - BATCH_DUPLICATE: Re-delivery of an ingested batch
            - BATCH_REJECTED: Validation, PII or authorization failure
        """
        body = payload if isinstance(payload, dict) else {}
        batch_id = body.get("batch_id") if isinstance(body.get("batch_id"), str) else None
        classroom_id = body.get("classroom_id") if isinstance(body.get("classroom_id"), str) else None

        try:
            self._authorize(token, classroom_id)
        except AnalyticsPipelineError as e:
            return self._reject(batch_id, classroom_id, e)

        if batch_id:
            previous = self._find_ingested(batch_id)
            if previous is not None:
                return self._duplicate(previous)

        try:
            batch = self.validator.validate(payload)
        except AnalyticsPipelineError as e:
            return self._reject(batch_id, classroom_id, e)

        # The batch id is recorded last so a failed run is retried in full
        try:
            stored = self.event_repository.insert_many(batch.events)
            self.aggregation_cache.invalidate_for_events(batch.events)
            recorded = self.batch_repository.record(IngestedBatch(
                batch_id=batch.batch_id,
                classroom_id=batch.classroom_id,
                event_count=len(batch.events),
                ingested_at=self._clock(),
            ))
        except RepositoryError as e:
            logger.error(
                "BATCH_PERSIST_FAILED",
                extra={"batch_id": batch.batch_id, "error": str(e)}
            )
            raise ServerUnavailableError(
                "Durable store unavailable",
                details={"batch_id": batch.batch_id},
            ) from e

        self.audit_logger.log(
            AuditAction.BATCH_INGESTED,
            AuditEntity.BATCH,
            batch.batch_id,
            classroom_id=batch.classroom_id,
            details={
                "accepted_count": len(batch.events),
                "stored_count": stored,
                "duplicate_batch": not recorded,
            },
        )
        logger.info(
            "BATCH_INGESTED",
            extra={
                "batch_id": batch.batch_id,
                "classroom_id": batch.classroom_id,
                "accepted_count": len(batch.events),
                "stored_count": stored,
            }
        )
        return IngestResult(
            success=True,
            batch_id=batch.batch_id,
            accepted_count=len(batch.events),
            stored_count=stored,
            duplicate_batch=not recorded,
        )

    def _authorize(self, token: Optional[str], classroom_id: Optional[str]) -> None:
        if not self.config.require_authorization:
            return
        if self.authorizer is None or classroom_id is None:
            raise UnauthorizedError("Caller cannot be authorized for this classroom")
        if not self.authorizer(token, classroom_id):
            raise UnauthorizedError("Caller is not authorized for this classroom")

    def _find_ingested(self, batch_id: str) -> Optional[IngestedBatch]:
        try:
            return self.batch_repository.find_by_id(batch_id)
        except RepositoryError as e:
            logger.error(
                "BATCH_LOOKUP_FAILED",
                extra={"batch_id": batch_id, "error": str(e)}
            )
            raise ServerUnavailableError(
                "Durable store unavailable",
                details={"batch_id": batch_id},
            ) from e

    def _duplicate(self, previous: IngestedBatch) -> IngestResult:
        logger.info(
            "BATCH_DUPLICATE",
            extra={"batch_id": previous.batch_id, "classroom_id": previous.classroom_id}
        )
        return IngestResult(
            success=True,
            batch_id=previous.batch_id,
            accepted_count=previous.event_count,
            duplicate_batch=True,
        )

    def _reject(
        self,
        batch_id: Optional[str],
        classroom_id: Optional[str],
        error: AnalyticsPipelineError,
    ) -> IngestResult:
        logger.warning(
            "BATCH_REJECTED",
            extra={
                "batch_id": batch_id,
                "classroom_id": classroom_id,
                "reason_code": error.reason_code,
            }
        )
        self.audit_logger.log(
            AuditAction.BATCH_REJECTED,
            AuditEntity.BATCH,
            batch_id or "unknown",
            classroom_id=classroom_id,
            details={"reason_code": error.reason_code, **_safe_details(error)},
        )
        return IngestResult(
            success=False,
            batch_id=batch_id,
            reason_code=error.reason_code,
            error=error.message,
        )

    def ready(self) -> bool:
        manager = self.event_repository.connection_manager
        return manager is None or manager.health_check()["healthy"]


def _safe_details(error: AnalyticsPipelineError) -> Dict[str, Any]:
    # Field and pattern names only; rejected values are never recorded
    return {
        k: v for k, v in error.details.items()
        if k in ("field", "fields", "patterns", "missing", "event_index", "key")
    }


def build_handler(
    connection_manager: Optional[ConnectionManager] = None,
    authorizer: Optional[Authorizer] = None,
) -> IngestionHandler:
    """Wire an IngestionHandler against one database (in-memory if None).

    Without an authorizer every upload is rejected unless
    INGEST_REQUIRE_AUTH is disabled.
    """
    event_repository = DurableEventRepository(connection_manager)
    return IngestionHandler(
        event_repository=event_repository,
        batch_repository=IngestedBatchRepository(connection_manager),
        aggregation_cache=AggregationCache(
            event_repository,
            WindowRepository(connection_manager),
            config=AggregationConfig.from_env(),
        ),
        audit_logger=AuditLogger(AuditRepository(connection_manager)),
        authorizer=authorizer,
        config=IngestionConfig.from_env(),
    )


# Global handler instance
_handler: Optional[IngestionHandler] = None


def get_handler() -> IngestionHandler:
    """Get or create the global handler instance."""
    global _handler
    if _handler is None:
        _handler = build_handler(connection_manager_from_env())
    return _handler


def set_handler(handler: IngestionHandler) -> None:
    """Set the global handler (for testing)."""
    global _handler
    _handler = handler


def _bearer_token() -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):].strip() or None
    return None


# Flask routes
@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({"status": "healthy", "service": "ingestion-service"})


@app.route("/ready", methods=["GET"])
def ready():
    """Readiness check endpoint."""
    if not get_handler().ready():
        return jsonify({"status": "not_ready", "service": "ingestion-service"}), 503
    return jsonify({"status": "ready", "service": "ingestion-service"})


@app.route("/v1/batches", methods=["POST"])
def upload_batch():
    """Accept one batch upload.

    Request Body:
        {
            "batch_id": "batch_3f2a...",
            "classroom_id": "room-12",
            "events": [{"event_id": "...", "anonymous_subject_hash": "...", ...}]
        }

    Returns:
        200 on acceptance (including duplicate re-delivery), 400 on
        validation or PII rejection, 401 if unauthorized, 503 if storage
        is unavailable
    """
    payload = request.get_json(silent=True)

    try:
        result = get_handler().ingest(payload, token=_bearer_token())
    except ServerUnavailableError as e:
        return jsonify({
            "status": "error",
            "reason_code": e.reason_code,
            "error": e.message,
        }), 503

    return jsonify(result.to_dict()), result.http_status


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    port = int(os.getenv("PORT", "8080"))
    app.run(host="0.0.0.0", port=port)
