"""K-anonymity enforcement for classroom rollups.

Suppress score detail if fewer than k distinct students contributed, so an
aggregate can never be reverse-engineered into one child's behavior.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

# Minimum distinct subjects behind a published aggregate
K_ANONYMITY_THRESHOLD = 5

# Payload fields that describe individual behavior and are withheld
SUPPRESSIBLE_FIELDS = ("average_score", "score_distribution", "interaction_counts")

T = TypeVar('T')


@dataclass(frozen=True)
class AggregateResult(Generic[T]):
    """Result of an aggregation with k-anonymity applied.

    Attributes:
        data: The aggregated data (None if suppressed)
        group_size: Number of distinct subjects in the group
        suppressed: True if data was suppressed due to k-anonymity
        suppression_reason: Explanation if suppressed
    """
    data: Optional[T]
    group_size: int
    suppressed: bool
    suppression_reason: Optional[str] = None


class KAnonymityEnforcer:
    """Enforces k-anonymity on aggregated data."""

    def __init__(self, k_threshold: int = K_ANONYMITY_THRESHOLD):
        """Initialize enforcer.

        Args:
            k_threshold: Minimum group size (default 5)
        """
        self.k_threshold = k_threshold

        logger.info(
            "K_ANONYMITY_ENFORCER_INITIALIZED",
            extra={"k_threshold": k_threshold}
        )

    def check_and_suppress(
        self,
        data: T,
        group_size: int,
        context: Optional[str] = None,
    ) -> AggregateResult[T]:
        """Check group size and suppress if below threshold.

        Args:
            data: The aggregated data to potentially suppress
            group_size: Number of distinct subjects in the group
            context: Description of the aggregate for logging

        Returns:
            AggregateResult with data or suppression info

        Logs:
            - K_ANONYMITY_SUPPRESSED: When data is suppressed
        """
        if group_size < self.k_threshold:
            logger.info(
                "K_ANONYMITY_SUPPRESSED",
                extra={
                    "group_size": group_size,
                    "k_threshold": self.k_threshold,
                    "context": context,
                }
            )
            return AggregateResult(
                data=None,
                group_size=group_size,
                suppressed=True,
                suppression_reason=(
                    f"Group size ({group_size}) below k-anonymity "
                    f"threshold ({self.k_threshold})"
                ),
            )

        return AggregateResult(data=data, group_size=group_size, suppressed=False)

    def apply_to_payload(
        self,
        payload: Dict[str, Any],
        context: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Return a copy of a window payload with detail withheld if needed.

        Counts (``event_count``, ``distinct_subjects``) are always published;
        the fields in SUPPRESSIBLE_FIELDS become None when the window has
        fewer than k distinct subjects.
        """
        detail = {name: payload.get(name) for name in SUPPRESSIBLE_FIELDS}
        result = self.check_and_suppress(detail, payload.get("distinct_subjects", 0), context)

        published = dict(payload)
        published.update(result.data or {name: None for name in SUPPRESSIBLE_FIELDS})
        published["suppressed"] = result.suppressed
        published["suppression_reason"] = result.suppression_reason
        return published
