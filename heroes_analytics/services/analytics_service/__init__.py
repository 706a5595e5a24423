"""Analytics Service - cached, k-anonymous classroom rollups."""
from .aggregation_cache import AggregationCache, CacheKey, summarize
from .k_anonymity import (
    AggregateResult,
    KAnonymityEnforcer,
    K_ANONYMITY_THRESHOLD,
)
from .window_repository import WindowRepository

__all__ = [
    "AggregationCache",
    "CacheKey",
    "summarize",
    "AggregateResult",
    "KAnonymityEnforcer",
    "K_ANONYMITY_THRESHOLD",
    "WindowRepository",
]
