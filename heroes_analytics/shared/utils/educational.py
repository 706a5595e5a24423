"""Educational-purpose allow-lists.

Only interaction tags and metadata keys that serve a documented educational
purpose may be captured. Anything else is rejected before it is stored.
"""
from typing import Any, FrozenSet, Mapping, Optional

from heroes_analytics.shared.errors import ValidationError
from heroes_analytics.shared.models import BehavioralCategory
from .pii import is_identifying_key


ALLOWED_INTERACTION_TYPES: FrozenSet[str] = frozenset({
    # Empathy
    "peer_help",
    "active_listening",
    "showing_kindness",
    "perspective_taking",
    "comforting_peer",
    # Confidence
    "speaking_up",
    "trying_new_task",
    "answering_question",
    "self_advocacy",
    # Communication
    "sharing_ideas",
    "asking_questions",
    "group_discussion",
    "conflict_resolution",
    "taking_turns",
    # Leadership
    "leading_activity",
    "encouraging_others",
    "organizing_group",
    "standing_up_for_others",
    # Lesson participation
    "role_play",
    "reflection",
    "scenario_choice",
    "lesson_completion",
})

ALLOWED_METADATA_KEYS: FrozenSet[str] = frozenset({
    "engagement_level",
    "time_spent",
    "completion_rate",
    "interaction_count",
    "interaction_context",
    "help_requested",
    "peer_interaction",
    "lesson_segment",
    "activity_type",
    "grade_level",
    "duration",
    "offline_mode",
    "device_type",
    "app_version",
    "connection_type",
    "lesson_category",
})

# Metadata values must be scalars; strings are capped to keep tags short
MAX_METADATA_STRING_LENGTH = 64


def validate_category(value: Any) -> BehavioralCategory:
    """Coerce and validate a behavioral category.

    Raises:
        ValidationError: If the category is not on the allow-list
    """
    if isinstance(value, BehavioralCategory):
        return value
    try:
        return BehavioralCategory(value)
    except ValueError:
        raise ValidationError(
            "Category is not an allowed behavioral category",
            details={"category": str(value)[:32]},
        )


def validate_interaction_type(value: Any) -> str:
    """Check an interaction tag against the educational allow-list.

    Raises:
        ValidationError: If the tag is not allowed
    """
    if not isinstance(value, str) or value not in ALLOWED_INTERACTION_TYPES:
        raise ValidationError(
            "Interaction type is not on the educational-purpose allow-list",
            details={"interaction_type": str(value)[:32]},
        )
    return value


def validate_metadata(metadata: Optional[Mapping[str, Any]]) -> None:
    """Restrict metadata to non-PII educational keys and scalar values.

    Raises:
        ValidationError: On a disallowed key or non-scalar value
    """
    if not metadata:
        return
    if not isinstance(metadata, Mapping):
        raise ValidationError("Metadata must be a mapping")

    for key, value in metadata.items():
        if not isinstance(key, str) or is_identifying_key(key):
            raise ValidationError(
                "Metadata key may identify a student",
                details={"key": str(key)[:32]},
            )
        if key not in ALLOWED_METADATA_KEYS:
            raise ValidationError(
                "Metadata key is not on the educational-purpose allow-list",
                details={"key": key[:32]},
            )
        if value is not None and not isinstance(value, (str, int, float, bool)):
            raise ValidationError(
                "Metadata values must be scalars",
                details={"key": key},
            )
        if isinstance(value, str) and len(value) > MAX_METADATA_STRING_LENGTH:
            raise ValidationError(
                "Metadata value too long",
                details={"key": key, "max_length": MAX_METADATA_STRING_LENGTH},
            )


def validate_score(value: Any) -> int:
    """Scores are integers on a 1-5 scale.

    Raises:
        ValidationError: If out of range or not an integer
    """
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 5:
        raise ValidationError(
            "Score must be an integer between 1 and 5",
            details={"score": str(value)[:16]},
        )
    return value
