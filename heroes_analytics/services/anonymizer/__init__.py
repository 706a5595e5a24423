"""Anonymizer - per-day salted subject hashing.

Hashes are stable within a day and unlinkable across days. Daily salts are
deleted after the retention window, which makes old hashes irreversible.
"""
from .anonymizer import Anonymizer, SALT_RETENTION_DAYS, HASH_LENGTH
from .salt_repository import SaltRepository

__all__ = [
    "Anonymizer",
    "SaltRepository",
    "SALT_RETENTION_DAYS",
    "HASH_LENGTH",
]
