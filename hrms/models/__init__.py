from .feedback import (
    ENTITY_NAME as FEEDBACK_ENTITY,
    FEEDBACK_SCHEMA,
    FEEDBACK_TYPES,
    PRIORITIES,
    REVIEW_STATUSES,
    STATUSES,
)

__all__ = [
    "FEEDBACK_ENTITY",
    "FEEDBACK_SCHEMA",
    "FEEDBACK_TYPES",
    "PRIORITIES",
    "REVIEW_STATUSES",
    "STATUSES",
]
