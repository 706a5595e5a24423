"""Retention Service HTTP Handler - administrative lifecycle triggers.

Endpoints:
- GET /health - Health check
- POST /retention/sweep - Run a retention sweep
- POST /consent/withdraw - Purge a subject after consent withdrawal
- GET /retention/log - Recent retention sweeps
"""
import logging
import os
from typing import Optional

from flask import Flask, jsonify, request

from heroes_analytics.shared.config import AggregationConfig, RetentionConfig
from heroes_analytics.shared.database import (
    ConnectionManager,
    RepositoryError,
    connection_manager_from_env,
)
from heroes_analytics.shared.errors import RetentionError, ServerUnavailableError, ValidationError
from heroes_analytics.services.analytics_service import AggregationCache, WindowRepository
from heroes_analytics.services.anonymizer import Anonymizer, SaltRepository
from heroes_analytics.services.audit_service import AuditLogger, AuditRepository
from heroes_analytics.services.ingestion_service import DurableEventRepository
from .archive_repository import ArchiveRepository
from .retention_engine import RetentionEngine
from .retention_log import RetentionLogRepository

logger = logging.getLogger(__name__)

app = Flask(__name__)

MAX_LOG_LIMIT = 500


def build_engine(connection_manager: Optional[ConnectionManager] = None) -> RetentionEngine:
    """Wire a RetentionEngine against one database (in-memory if None)."""
    config = RetentionConfig.from_env()
    event_repository = DurableEventRepository(connection_manager)
    return RetentionEngine(
        event_repository,
        archive_repository=ArchiveRepository(connection_manager),
        log_repository=RetentionLogRepository(connection_manager),
        aggregation_cache=AggregationCache(
            event_repository,
            WindowRepository(connection_manager),
            config=AggregationConfig.from_env(),
        ),
        anonymizer=Anonymizer(
            SaltRepository(connection_manager),
            salt_retention_days=config.salt_retention_days,
        ),
        audit_logger=AuditLogger(AuditRepository(connection_manager)),
        config=config,
    )


# Global engine instance
_engine: Optional[RetentionEngine] = None


def get_engine() -> RetentionEngine:
    """Get or create the global engine instance."""
    global _engine
    if _engine is None:
        _engine = build_engine(connection_manager_from_env())
    return _engine


def set_engine(engine: RetentionEngine) -> None:
    """Set the global engine (for testing)."""
    global _engine
    _engine = engine


def _error(error, status: int):
    return jsonify({
        "status": "error",
        "reason_code": error.reason_code,
        "error": error.message,
    }), status


# Flask routes
@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({"status": "healthy", "service": "retention-service"})


@app.route("/retention/sweep", methods=["POST"])
def run_sweep():
    """Run a retention sweep.

    Request Body (optional):
        {"policy_days": 90}

    Returns:
        Sweep summary, 400 on a bad policy, 500 if the sweep aborted
    """
    data = request.get_json(silent=True) or {}
    policy_days = data.get("policy_days")

    try:
        summary = get_engine().run_retention_sweep(policy_days)
    except ValidationError as e:
        return _error(e, 400)
    except RetentionError as e:
        return _error(e, 500)

    return jsonify(summary.to_dict())


@app.route("/consent/withdraw", methods=["POST"])
def withdraw_consent():
    """Purge all data for a subject.

    Request Body:
        {"subject_identifier": "..."} or {"subject_hash": "<64 hex>"}

    Returns:
        {"purged": bool}; 400 if neither field is valid, 503 if a store
        cannot be reached
    """
    data = request.get_json(silent=True) or {}
    engine = get_engine()

    try:
        if "subject_identifier" in data:
            purged = engine.withdraw_consent(data["subject_identifier"])
        elif "subject_hash" in data:
            purged = engine.purge_subject(data["subject_hash"]).complete
        else:
            raise ValidationError("subject_identifier or subject_hash is required")
    except ValidationError as e:
        return _error(e, 400)
    except RepositoryError:
        return _error(ServerUnavailableError("Durable store unavailable"), 503)

    return jsonify({"purged": purged})


@app.route("/retention/log", methods=["GET"])
def retention_log():
    """List recent sweeps, newest first.

    Query Parameters:
        limit: Maximum entries (default 50)
    """
    limit = min(request.args.get("limit", 50, type=int), MAX_LOG_LIMIT)
    try:
        entries = get_engine().log_repository.list_recent(max(limit, 1))
    except RepositoryError:
        return _error(ServerUnavailableError("Durable store unavailable"), 503)
    return jsonify({"entries": [e.to_dict() for e in entries]})


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    port = int(os.getenv("PORT", "8080"))
    app.run(host="0.0.0.0", port=port)
