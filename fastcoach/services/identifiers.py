"""
Notification identifiers — single source of truth for how they are built
and parsed.

Format: ``behavioral_<type>_<trigger-label>_<fire-epoch-seconds>``
e.g.    ``behavioral_hydration_every_180_1741510800``

The fire instant (not the decision time) is part of the identifier, so
scheduling the same logical occurrence twice yields the same identifier and
the delivery layer replaces rather than duplicates it.
"""

import hashlib
import logging
from datetime import datetime
from typing import Optional

from fastcoach.models.notification_rule import ActivityType

logger = logging.getLogger(__name__)

PREFIX = "behavioral"
SEPARATOR = "_"
MAX_IDENTIFIER_LENGTH = 64
_DIGEST_LENGTH = 7


def build_identifier(activity_type: ActivityType, trigger_label: str, fire_at: datetime) -> str:
    identifier = SEPARATOR.join([
        PREFIX,
        ActivityType(activity_type).value,
        trigger_label,
        str(int(fire_at.timestamp())),
    ])
    if len(identifier) > MAX_IDENTIFIER_LENGTH:
        logger.warning(
            "Identifier length exceeds limit: %d > %d", len(identifier), MAX_IDENTIFIER_LENGTH
        )
        return truncate_identifier(identifier)
    return identifier


def truncate_identifier(identifier: str) -> str:
    """Keep the head of the identifier and append a short digest of the whole."""
    if len(identifier) <= MAX_IDENTIFIER_LENGTH:
        return identifier
    digest = hashlib.sha1(identifier.encode("utf-8")).hexdigest()[:_DIGEST_LENGTH]
    head = identifier[: MAX_IDENTIFIER_LENGTH - _DIGEST_LENGTH - 1]
    return f"{head}{SEPARATOR}{digest}"


def type_prefix(activity_type: ActivityType) -> str:
    """Prefix shared by every identifier of ``activity_type``."""
    return f"{PREFIX}{SEPARATOR}{ActivityType(activity_type).value}{SEPARATOR}"


def extract_activity_type(identifier: str) -> Optional[ActivityType]:
    if not identifier.startswith(PREFIX + SEPARATOR):
        return None
    rest = identifier[len(PREFIX) + 1:]
    # Type values contain underscores themselves; longest match wins
    for activity_type in sorted(ActivityType, key=lambda t: len(t.value), reverse=True):
        if rest.startswith(activity_type.value + SEPARATOR):
            return activity_type
    logger.debug("Failed to extract activity type from identifier: %s", identifier)
    return None


def extract_trigger_label(identifier: str) -> Optional[str]:
    activity_type = extract_activity_type(identifier)
    if activity_type is None:
        return None
    rest = identifier[len(type_prefix(activity_type)):]
    label, sep, stamp = rest.rpartition(SEPARATOR)
    if not sep or not label or not stamp.isdigit():
        return None
    return label


def is_valid_identifier(identifier: str) -> bool:
    return extract_trigger_label(identifier) is not None
