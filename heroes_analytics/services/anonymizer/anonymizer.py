"""Anonymous subject hashing with rotating daily salts.

A subject's hash is SHA-256 over the normalized identifier concatenated
with that day's secret salt:
- Same identifier, same day: same hash, so a session's events group together
- Same identifier, different days: unrelated hashes, so days cannot be joined

Salts older than the retention window are deleted by the Retention Engine.
Once a day's salt is gone its hashes can never be reproduced, and the
Anonymizer refuses to mint a replacement.
"""
import logging
import secrets
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Optional

from heroes_analytics.shared.errors import SaltUnavailableError, ValidationError
from heroes_analytics.shared.models import AnonymousSaltRecord
from heroes_analytics.shared.utils import normalize_identifier, sha256_hex
from .salt_repository import SaltRepository

logger = logging.getLogger(__name__)

# Salt retention default, in days
SALT_RETENTION_DAYS = 7

SALT_BYTES = 32
HASH_LENGTH = 64


class Anonymizer:
    """Derives per-day anonymous hashes from local subject identifiers.

    Raw identifiers are used only in memory for the duration of a call and
    are never logged.
    """

    def __init__(
        self,
        salt_repository: Optional[SaltRepository] = None,
        salt_retention_days: int = SALT_RETENTION_DAYS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize anonymizer.

        Args:
            salt_repository: Salt store (in-memory if not given)
            salt_retention_days: Days a salt may be lazily created for
            clock: Returns the current UTC time (injected for testing)
        """
        self.salt_repository = salt_repository or SaltRepository()
        self.salt_retention_days = salt_retention_days
        self._clock = clock or datetime.utcnow

        logger.info(
            "ANONYMIZER_INITIALIZED",
            extra={"salt_retention_days": salt_retention_days}
        )

    def today(self) -> date:
        return self._clock().date()

    def earliest_retained_date(self) -> date:
        """Oldest day whose salt may still exist."""
        return self.today() - timedelta(days=self.salt_retention_days)

    def hash(self, subject_identifier: str, for_date: Optional[date] = None) -> str:
        """Return the anonymous subject hash for an identifier and day.

        Args:
            subject_identifier: Stable local identifier (never persisted)
            for_date: Calendar day of the hash (defaults to today)

        Returns:
            64-character lowercase hex digest

        Raises:
            ValidationError: If the identifier is empty
            SaltUnavailableError: If the day's salt was purged

        Logs:
            - SALT_UNAVAILABLE: When hashing against a purged day
        """
        normalized = self._normalize(subject_identifier)
        target = for_date or self.today()

        salt = self.salt_repository.get_for_date(target)
        if salt is None:
            if target < self.earliest_retained_date():
                logger.warning(
                    "SALT_UNAVAILABLE",
                    extra={
                        "salt_date": target.isoformat(),
                        "salt_retention_days": self.salt_retention_days,
                    }
                )
                raise SaltUnavailableError(
                    "Salt for this date has been purged",
                    details={"salt_date": target.isoformat()},
                )
            salt = self.salt_repository.get_or_create(
                target, lambda: self._new_salt(target)
            )

        return sha256_hex(normalized + salt.salt_value)

    def known_hashes(self, subject_identifier: str) -> Dict[date, str]:
        """Hashes of an identifier for every day that still has a salt.

        Never creates salts. Used to locate a subject's rows for purge.
        """
        normalized = self._normalize(subject_identifier)
        hashes: Dict[date, str] = {}
        for salt_date in self.salt_repository.list_dates():
            salt = self.salt_repository.get_for_date(salt_date)
            if salt is not None:
                hashes[salt_date] = sha256_hex(normalized + salt.salt_value)
        return hashes

    def cleanup_salts(self) -> int:
        """Delete salts older than the retention window."""
        return self.salt_repository.delete_older_than(self.earliest_retained_date())

    @staticmethod
    def _normalize(subject_identifier: str) -> str:
        if not isinstance(subject_identifier, str):
            raise ValidationError("Subject identifier must be a string")
        normalized = normalize_identifier(subject_identifier)
        if not normalized:
            raise ValidationError("Subject identifier is empty")
        return normalized

    def _new_salt(self, salt_date: date) -> AnonymousSaltRecord:
        return AnonymousSaltRecord(
            salt_date=salt_date,
            salt_value=secrets.token_hex(SALT_BYTES),
            is_active=True,
            created_at=self._clock(),
        )
