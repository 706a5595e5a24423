"""PII detection and hashing helpers.

No raw student identifier, name, email, phone number or address may reach
durable storage or application logs. The PII Guard runs twice: as a hard
local gate before an event is written on the device, and again on the
server as defense-in-depth before ingestion.
"""
import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Pattern, Tuple

from heroes_analytics.shared.errors import PIIDetectedError

logger = logging.getLogger(__name__)


PII_PATTERNS: Dict[str, str] = {
    "email": r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b",
    # Alphanumeric lookarounds so digit runs inside hex ids do not match
    "phone": r"(?<![0-9A-Za-z])(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}(?![0-9A-Za-z])",
    "street_address": (
        r"(?i)\b\d{1,6}\s+(?:[a-z0-9.]+\s+){0,3}"
        r"(?:street|st|avenue|ave|road|rd|boulevard|blvd|lane|ln|drive|dr"
        r"|court|ct|way|place|pl|terrace|circle)\b\.?"
    ),
    # Capitalized first + last name, optionally with a middle initial
    "full_name": r"\b[A-Z][a-z]{1,20}\s+(?:[A-Z]\.\s+)?[A-Z][a-z]{1,20}(?:-[A-Z][a-z]+)?\b",
}

# Keys that must never be used as metadata, regardless of value
IDENTIFYING_KEY_FRAGMENTS: Tuple[str, ...] = (
    "name", "email", "phone", "address", "birth", "ssn",
    "student_id", "user_id", "device_id", "ip", "contact", "personal",
)


@dataclass(frozen=True)
class PIIFinding:
    """A single PII pattern match. The matched text is never retained."""
    field_name: str
    pattern_name: str


class PIIGuard:
    """Regex scanner for PII in free-text fields.

    Patterns are compiled once per instance. Findings carry only the field
    and pattern names so they are safe to log.
    """

    def __init__(self, patterns: Optional[Mapping[str, str]] = None):
        """Initialize guard.

        Args:
            patterns: Pattern name to regex mapping (defaults to PII_PATTERNS)
        """
        source = patterns or PII_PATTERNS
        self._patterns: List[Tuple[str, Pattern[str]]] = [
            (name, re.compile(regex)) for name, regex in source.items()
        ]

    @property
    def pattern_names(self) -> List[str]:
        return [name for name, _ in self._patterns]

    def scan_text(self, text: str) -> List[str]:
        """Return the names of all patterns matching ``text``."""
        if not text:
            return []
        return [name for name, pattern in self._patterns if pattern.search(text)]

    def scan_fields(self, fields: Mapping[str, Any]) -> List[PIIFinding]:
        """Scan string and numeric values (including nested lists) of a mapping.

        Args:
            fields: Field name to value mapping

        Returns:
            List of findings, empty if clean
        """
        findings: List[PIIFinding] = []
        for field_name, value in fields.items():
            for text in _iter_strings(value):
                for pattern_name in self.scan_text(text):
                    findings.append(PIIFinding(field_name, pattern_name))
        return findings

    def ensure_clean(self, fields: Mapping[str, Any], context: str = "") -> None:
        """Raise if any field matches a PII pattern.

        Raises:
            PIIDetectedError: With field and pattern names in details
        """
        findings = self.scan_fields(fields)
        if findings:
            logger.warning(
                "PII_DETECTED",
                extra={
                    "context": context,
                    "fields": sorted({f.field_name for f in findings}),
                    "patterns": sorted({f.pattern_name for f in findings}),
                }
            )
            raise PIIDetectedError(
                "Free-text fields contain personally identifiable information",
                details={
                    "fields": sorted({f.field_name for f in findings}),
                    "patterns": sorted({f.pattern_name for f in findings}),
                },
            )


def _iter_strings(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        # Numbers can carry phone digits
        yield str(value)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _iter_strings(item)


def is_identifying_key(key: str) -> bool:
    """True if a metadata key looks like it names personal data."""
    lowered = key.lower().replace("-", "_")
    tokens = set(lowered.split("_"))
    for fragment in IDENTIFYING_KEY_FRAGMENTS:
        if "_" in fragment:
            if fragment in lowered:
                return True
        elif fragment in tokens:
            return True
    return False


def normalize_identifier(value: str) -> str:
    """Trim and case-fold a local subject identifier before hashing."""
    return value.strip().casefold()


def sha256_hex(value: str) -> str:
    """SHA-256 hex digest of a UTF-8 string."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_text_for_audit(text: str) -> str:
    """Fingerprint text for the audit trail without exposing content."""
    return sha256_hex(text)
