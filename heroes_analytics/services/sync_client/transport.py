"""Batch upload transports.

A transport sends one batch payload and either returns an acknowledgement
or raises a pipeline error whose ``retriable`` flag tells the Sync Agent
whether to back off and retry or to fail the batch.

Server responses are mapped as:
- 2xx: acknowledged
- 400/422: ValidationError or PIIDetectedError (non-retriable)
- 401/403: UnauthorizedError (retriable, credentials refresh first)
- 408/429: TransientNetworkError
- 5xx: ServerUnavailableError
- timeouts and connection errors: TransientNetworkError
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import aiohttp

from heroes_analytics.shared.errors import (
    PIIDetectedError,
    ServerUnavailableError,
    TransientNetworkError,
    UnauthorizedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

BATCH_UPLOAD_PATH = "/v1/batches"


@dataclass(frozen=True)
class UploadAck:
    """Server acknowledgement of a batch."""
    batch_id: str
    accepted_count: int = 0
    duplicate_batch: bool = False


class BatchTransport(ABC):
    """Sends batch payloads to the Ingestion Endpoint."""

    @abstractmethod
    async def upload(self, payload: Dict[str, Any]) -> UploadAck:
        """Upload one batch.

        Args:
            payload: Batch JSON with batch_id, classroom_id and events

        Returns:
            UploadAck on success

        Raises:
            AnalyticsPipelineError: Subclass describing the failure
        """
        pass


class HttpBatchTransport(BatchTransport):
    """aiohttp transport posting JSON to ``{base_url}/v1/batches``."""

    def __init__(
        self,
        base_url: str,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        timeout_seconds: float = 15.0,
    ):
        """Initialize transport.

        Args:
            base_url: Ingestion service root URL
            token_provider: Returns the current bearer token (called per upload
                so refreshed credentials are picked up on retry)
            timeout_seconds: Total request timeout
        """
        self.endpoint = base_url.rstrip("/") + BATCH_UPLOAD_PATH
        self.token_provider = token_provider
        self.timeout_seconds = timeout_seconds

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        token = self.token_provider() if self.token_provider else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def upload(self, payload: Dict[str, Any]) -> UploadAck:
        batch_id = payload.get("batch_id", "")

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.endpoint,
                    headers=self._headers(),
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
                ) as response:
                    status = response.status
                    try:
                        body = await response.json(content_type=None)
                    except ValueError:
                        body = None
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(
                "Batch upload timed out",
                details={"batch_id": batch_id, "timeout_seconds": self.timeout_seconds},
            ) from e
        except aiohttp.ClientError as e:
            raise TransientNetworkError(
                "Batch upload connection failed",
                details={"batch_id": batch_id, "error": type(e).__name__},
            ) from e

        if not isinstance(body, dict):
            body = {}

        logger.info(
            "BATCH_UPLOAD_RESPONSE",
            extra={"batch_id": batch_id, "status": status}
        )
        return self._interpret(status, body, batch_id)

    @staticmethod
    def _interpret(status: int, body: Dict[str, Any], batch_id: str) -> UploadAck:
        details = {"batch_id": batch_id, "status": status}
        reason = body.get("reason_code")

        if 200 <= status < 300:
            return UploadAck(
                batch_id=body.get("batch_id", batch_id),
                accepted_count=int(body.get("accepted_count", 0)),
                duplicate_batch=bool(body.get("duplicate_batch", False)),
            )
        if status in (401, 403):
            raise UnauthorizedError("Upload not authorized", details=details)
        if status in (408, 429):
            raise TransientNetworkError("Server asked to retry later", details=details)
        if status >= 500:
            raise ServerUnavailableError("Ingestion service unavailable", details=details)
        if reason == PIIDetectedError.reason_code:
            raise PIIDetectedError(body.get("error", "Batch rejected: PII detected"), details=details)
        raise ValidationError(body.get("error", "Batch rejected"), details=details)
