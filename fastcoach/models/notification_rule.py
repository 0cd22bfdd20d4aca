"""
Notification rule records — one per activity type.

A rule is plain configuration: the per-type behaviour lives in the
applicability predicates (``fastcoach.services.rule_predicates``) and all
mutable state lives in the throttle / daily-limit trackers.  Rules are frozen;
a settings change replaces the whole record.
"""
from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field

from fastcoach.models.triggers import (
    EventOffsetTrigger,
    ImmediateTrigger,
    RecurringTrigger,
    TimeOfDayTrigger,
    Trigger,
)

logger = logging.getLogger(__name__)

# Throttle applied to v1 rule configs, which predate the field
LEGACY_THROTTLE_MINUTES: int = 60


# ── Enums ────────────────────────────────────────────────────────────────────

class ActivityType(str, Enum):
    fasting       = "fasting"
    hydration     = "hydration"
    weight        = "weight"
    sleep         = "sleep"
    mood          = "mood"
    milestone     = "milestone"
    did_you_know  = "did_you_know"
    goal_reminder = "goal_reminder"


class ToneStyle(str, Enum):
    supportive   = "supportive"     # gentle, empathetic
    educational  = "educational"    # factual, concise
    motivational = "motivational"   # energetic, action-oriented
    stoic        = "stoic"          # calm, data-first


class InterruptionLevel(str, Enum):
    passive        = "passive"
    active         = "active"
    time_sensitive = "time_sensitive"
    critical       = "critical"


# ── Rule ─────────────────────────────────────────────────────────────────────

class NotificationRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    activity_type            : ActivityType
    is_enabled               : bool = True
    allow_during_quiet_hours : bool = False
    throttle_minutes         : int  = Field(LEGACY_THROTTLE_MINUTES, ge=0)
    max_per_day              : int  = Field(1, ge=1)
    trigger                  : Trigger = Field(default_factory=ImmediateTrigger)

    tone_style         : ToneStyle         = ToneStyle.supportive
    sound_enabled      : bool              = True
    interruption_level : InterruptionLevel = InterruptionLevel.active

    def replace(self, **changes: Any) -> "NotificationRule":
        """
        Validated copy with ``changes`` applied.

        Unknown field names and a different ``activity_type`` raise
        ``ValueError``; a rule never moves to another type's slot.
        """
        unknown = sorted(set(changes) - set(NotificationRule.model_fields))
        if unknown:
            raise ValueError(f"unknown rule field(s): {', '.join(unknown)}")
        if "activity_type" in changes and ActivityType(changes["activity_type"]) != self.activity_type:
            raise ValueError(
                f"cannot change activity_type of the {self.activity_type.value} rule"
            )
        return NotificationRule.model_validate({**self.model_dump(), **changes})

    @classmethod
    def from_legacy(
        cls, activity_type: ActivityType, payload: Union[str, dict]
    ) -> "NotificationRule":
        """
        Decode a v1 rule config onto the type's defaults.

        v1 configs used camelCase keys, a ``timing`` object
        ({"before": 30} / {"after": 180} / {"exact": {"hour": 21, "minute": 30}})
        and had no throttle; missing throttle becomes LEGACY_THROTTLE_MINUTES.
        """
        data = json.loads(payload) if isinstance(payload, str) else dict(payload)
        base = default_rule(activity_type).model_dump()

        mapping = {
            "isEnabled":             "is_enabled",
            "allowDuringQuietHours": "allow_during_quiet_hours",
            "throttleMinutes":       "throttle_minutes",
            "maxPerDay":             "max_per_day",
            "toneStyle":             "tone_style",
            "soundEnabled":          "sound_enabled",
            "interruptionLevel":     "interruption_level",
        }
        base["throttle_minutes"] = LEGACY_THROTTLE_MINUTES
        for legacy_key, field in mapping.items():
            if legacy_key in data:
                base[field] = data[legacy_key]

        timing = data.get("timing")
        if isinstance(timing, dict):
            if "before" in timing:
                base["trigger"] = EventOffsetTrigger(offset_minutes=-int(timing["before"]))
            elif "after" in timing:
                base["trigger"] = EventOffsetTrigger(offset_minutes=int(timing["after"]))
            elif "exact" in timing:
                exact = timing["exact"]
                base["trigger"] = TimeOfDayTrigger(
                    hour=int(exact["hour"]), minute=int(exact.get("minute", 0))
                )
            # "dynamic" anchors have no equivalent; the default trigger stays

        return cls.model_validate(base)


# ─────────────────────────────────────────────────────────────────────────────
# Default rules
# ─────────────────────────────────────────────────────────────────────────────

DEFAULT_RULES: dict[ActivityType, NotificationRule] = {
    ActivityType.fasting: NotificationRule(
        activity_type=ActivityType.fasting,
        throttle_minutes=60,
        max_per_day=4,
        trigger=EventOffsetTrigger(offset_minutes=-30),
        tone_style=ToneStyle.motivational,
    ),
    ActivityType.hydration: NotificationRule(
        activity_type=ActivityType.hydration,
        throttle_minutes=180,
        max_per_day=8,
        trigger=RecurringTrigger(interval_minutes=180),
        sound_enabled=False,
        interruption_level=InterruptionLevel.passive,
    ),
    ActivityType.weight: NotificationRule(
        activity_type=ActivityType.weight,
        throttle_minutes=720,
        max_per_day=1,
        trigger=TimeOfDayTrigger(hour=8, minute=0),
        tone_style=ToneStyle.educational,
        sound_enabled=False,
        interruption_level=InterruptionLevel.passive,
    ),
    # Sleep prep is the one reminder that belongs inside quiet hours
    ActivityType.sleep: NotificationRule(
        activity_type=ActivityType.sleep,
        allow_during_quiet_hours=True,
        throttle_minutes=720,
        max_per_day=1,
        trigger=TimeOfDayTrigger(hour=21, minute=30),
    ),
    ActivityType.mood: NotificationRule(
        activity_type=ActivityType.mood,
        throttle_minutes=240,
        max_per_day=2,
        trigger=TimeOfDayTrigger(hour=19, minute=0),
        sound_enabled=False,
    ),
    ActivityType.milestone: NotificationRule(
        activity_type=ActivityType.milestone,
        throttle_minutes=55,
        max_per_day=6,
        trigger=ImmediateTrigger(),
        tone_style=ToneStyle.motivational,
    ),
    ActivityType.did_you_know: NotificationRule(
        activity_type=ActivityType.did_you_know,
        throttle_minutes=0,
        max_per_day=1,
        trigger=TimeOfDayTrigger(hour=10, minute=0),
        tone_style=ToneStyle.educational,
    ),
    ActivityType.goal_reminder: NotificationRule(
        activity_type=ActivityType.goal_reminder,
        throttle_minutes=0,
        max_per_day=2,
        trigger=EventOffsetTrigger(offset_minutes=-15),
        tone_style=ToneStyle.motivational,
        interruption_level=InterruptionLevel.time_sensitive,
    ),
}


def default_rule(activity_type: ActivityType) -> NotificationRule:
    return DEFAULT_RULES[ActivityType(activity_type)]


def parse_activity_type(value: Union[str, ActivityType]) -> ActivityType | None:
    """ActivityType for ``value``, or None (logged) when it is not one."""
    try:
        return ActivityType(value)
    except ValueError:
        logger.warning("Unknown activity type: %r", value)
        return None
