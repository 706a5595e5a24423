"""Shared utilities for the analytics pipeline."""
from .pii import (
    PIIGuard,
    PIIFinding,
    PII_PATTERNS,
    is_identifying_key,
    normalize_identifier,
    sha256_hex,
    hash_text_for_audit,
)
from .educational import (
    ALLOWED_INTERACTION_TYPES,
    ALLOWED_METADATA_KEYS,
    validate_category,
    validate_interaction_type,
    validate_metadata,
    validate_score,
)

__all__ = [
    "PIIGuard",
    "PIIFinding",
    "PII_PATTERNS",
    "is_identifying_key",
    "normalize_identifier",
    "sha256_hex",
    "hash_text_for_audit",
    "ALLOWED_INTERACTION_TYPES",
    "ALLOWED_METADATA_KEYS",
    "validate_category",
    "validate_interaction_type",
    "validate_metadata",
    "validate_score",
]
