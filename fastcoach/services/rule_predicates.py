"""
Applicability predicates — the activity-specific gating that runs before the
generic quiet-hours / throttle / daily-limit filters.

One small pure function per activity type, looked up by the rule's
``activity_type``.  Each receives the behavioral context and the local zone
and holds no state.
"""

import logging
from datetime import timedelta
from typing import Callable, Optional

from fastcoach.models.guidance import BehavioralContext
from fastcoach.models.notification_rule import ActivityType, NotificationRule
from fastcoach.services.local_time import as_utc, to_local

logger = logging.getLogger(__name__)

# Fasting hours that earn a milestone; every whole hour past the last one counts too
MILESTONE_HOURS: tuple[int, ...] = (12, 16)

HYDRATION_GAP = timedelta(hours=3)
WEIGH_IN_GAP = timedelta(days=1)
WIND_DOWN_HOURS = range(21, 24)

Predicate = Callable[[BehavioralContext, object], bool]


def _since_last_activity(context: BehavioralContext, tz) -> Optional[timedelta]:
    if context.last_activity is None:
        return None
    return as_utc(context.time_of_day, tz) - as_utc(context.last_activity, tz)


def _fasting(context: BehavioralContext, tz) -> bool:
    # Building momentum always earns encouragement
    if context.current_streak >= 3:
        return True
    return context.goal_progress > 0.8


def _hydration(context: BehavioralContext, tz) -> bool:
    if context.has_active_fast is False:
        return False
    gap = _since_last_activity(context, tz)
    if gap is not None and gap > HYDRATION_GAP:
        return True
    return context.goal_progress < 0.7


def _weight(context: BehavioralContext, tz) -> bool:
    gap = _since_last_activity(context, tz)
    return gap is None or gap >= WEIGH_IN_GAP


def _sleep(context: BehavioralContext, tz) -> bool:
    return to_local(context.time_of_day, tz).hour in WIND_DOWN_HOURS


def _mood(context: BehavioralContext, tz) -> bool:
    if context.last_activity is None:
        return True
    today = to_local(context.time_of_day, tz).date()
    return to_local(context.last_activity, tz).date() < today


def milestone_crossed(previous_hours: float, current_hours: float) -> Optional[int]:
    """Highest milestone hour in ``(previous_hours, current_hours]``, if any."""
    crossed = None
    for hour in MILESTONE_HOURS:
        if previous_hours < hour <= current_hours:
            crossed = hour
    last_fixed = MILESTONE_HOURS[-1]
    if current_hours >= last_fixed + 1:
        top = int(current_hours)
        if previous_hours < top:
            crossed = top
    return crossed


def _milestone(context: BehavioralContext, tz) -> bool:
    if context.data_value is None:
        return False
    current = context.data_value
    gap = _since_last_activity(context, tz)
    if gap is None:
        return current >= MILESTONE_HOURS[0]
    previous = current - gap / timedelta(hours=1)
    return milestone_crossed(previous, current) is not None


def _did_you_know(context: BehavioralContext, tz) -> bool:
    return True


def _goal_reminder(context: BehavioralContext, tz) -> bool:
    return context.goal_progress < 1.0


PREDICATES: dict[ActivityType, Predicate] = {
    ActivityType.fasting:       _fasting,
    ActivityType.hydration:     _hydration,
    ActivityType.weight:        _weight,
    ActivityType.sleep:         _sleep,
    ActivityType.mood:          _mood,
    ActivityType.milestone:     _milestone,
    ActivityType.did_you_know:  _did_you_know,
    ActivityType.goal_reminder: _goal_reminder,
}


def is_applicable(rule: NotificationRule, context: BehavioralContext, tz) -> bool:
    """Rule enabled and its activity-specific gate open for this context."""
    if not rule.is_enabled:
        return False
    predicate = PREDICATES.get(rule.activity_type)
    if predicate is None:
        logger.warning("No applicability predicate for %s", rule.activity_type)
        return False
    return predicate(context, tz)
