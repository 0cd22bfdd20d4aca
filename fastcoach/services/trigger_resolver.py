"""
Trigger resolver — declarative trigger → concrete fire instant.

Returned instants are timezone-aware UTC.  Interval / event offsets are
computed on absolute instants, so they are correct across DST changes and
midnight without special-casing.  Time-of-day triggers are built from local
calendar components (see ``localize_wall_time`` for gap / overlap handling).

Every resolver returns ``None`` when its inputs make no sense; the scheduler
treats that as "do not schedule".
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from fastcoach.models.guidance import BehavioralContext
from fastcoach.models.triggers import (
    EventOffsetTrigger,
    ImmediateTrigger,
    IntervalTrigger,
    RecurringTrigger,
    TimeOfDayTrigger,
    Trigger,
)
from fastcoach.services.local_time import as_utc, local_wall_time_occurrences, to_local

logger = logging.getLogger(__name__)


def resolve(trigger: Trigger, context: BehavioralContext, tz) -> Optional[datetime]:
    """Fire instant for ``trigger`` given the decision context, or None."""
    now = as_utc(context.time_of_day, tz)

    if isinstance(trigger, ImmediateTrigger):
        return now

    if isinstance(trigger, IntervalTrigger):
        if trigger.seconds < 0:
            logger.warning("Interval trigger with negative seconds: %s", trigger.seconds)
            return None
        return now + timedelta(seconds=trigger.seconds)

    if isinstance(trigger, EventOffsetTrigger):
        return _resolve_event_offset(trigger, context, now, tz)

    if isinstance(trigger, TimeOfDayTrigger):
        return _resolve_time_of_day(trigger, now, tz)

    if isinstance(trigger, RecurringTrigger):
        return _resolve_recurring(trigger, context, now, tz)

    logger.warning("Unsupported trigger: %r", trigger)
    return None


def _resolve_event_offset(
    trigger: EventOffsetTrigger, context: BehavioralContext, now: datetime, tz
) -> Optional[datetime]:
    event = trigger.event_at or context.last_activity
    if event is None:
        logger.warning("Event-offset trigger without an event instant")
        return None

    fire_at = as_utc(event, tz) + timedelta(minutes=trigger.offset_minutes)
    if fire_at < now:
        logger.debug("Event-offset trigger already passed (%s < %s)", fire_at, now)
        return None
    return fire_at


def _resolve_time_of_day(trigger: TimeOfDayTrigger, now: datetime, tz) -> Optional[datetime]:
    if not (0 <= trigger.hour < 24 and 0 <= trigger.minute < 60):
        logger.warning("Time-of-day trigger out of range: %02d:%02d", trigger.hour, trigger.minute)
        return None

    today = to_local(now, tz).date()
    for days_ahead in (0, 1, 2):
        # A fall-back day yields two candidates; the first not yet passed wins
        for candidate in local_wall_time_occurrences(
            tz, today + timedelta(days=days_ahead), trigger.hour, trigger.minute
        ):
            if candidate >= now:
                return candidate
    return None


def _resolve_recurring(
    trigger: RecurringTrigger, context: BehavioralContext, now: datetime, tz
) -> Optional[datetime]:
    if trigger.interval_minutes <= 0:
        logger.warning("Recurring trigger with non-positive interval: %s", trigger.interval_minutes)
        return None

    interval = timedelta(minutes=trigger.interval_minutes)
    anchor = as_utc(context.last_activity, tz) if context.last_activity else now
    fire_at = anchor + interval
    if fire_at < now:
        missed = math.ceil((now - fire_at) / interval)
        fire_at += missed * interval
    return fire_at
