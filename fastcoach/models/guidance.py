"""
Per-call scheduling objects: the behavioral context handed in by the
tracker managers, the request being built while the pipeline runs, and the
decision handed back for diagnostics.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from fastcoach.models.notification_rule import ActivityType
from fastcoach.models.triggers import Trigger


@dataclass(frozen=True)
class BehavioralContext:
    """Snapshot of user state for one scheduling decision. Never persisted."""
    current_streak: int
    recent_pattern: str
    time_of_day: datetime                  # "now" for this decision
    data_value: Optional[float] = None     # ounces, kg, elapsed fasting hours…
    goal_progress: float = 0.0             # expected in [0, 1]
    last_activity: Optional[datetime] = None
    has_active_fast: Optional[bool] = None  # None: not known to the caller


@dataclass
class ScheduledNotificationRequest:
    activity_type: ActivityType
    trigger: Trigger
    context: BehavioralContext
    fire_at: Optional[datetime] = None
    title: str = ""
    body: str = ""
    identifier: str = ""


class DropReason(str, Enum):
    unknown_type   = "unknown_type"
    disabled       = "disabled"
    not_applicable = "not_applicable"
    invalid_trigger = "invalid_trigger"
    quiet_hours    = "quiet_hours"
    throttled      = "throttled"
    daily_limit    = "daily_limit"
    internal_error = "internal_error"


@dataclass(frozen=True)
class SchedulingDecision:
    activity_type: str
    delivered: bool
    reason: Optional[DropReason] = None
    fire_at: Optional[datetime] = None
    identifier: Optional[str] = None

    @classmethod
    def dropped(cls, activity_type, reason: DropReason, fire_at=None) -> "SchedulingDecision":
        value = getattr(activity_type, "value", activity_type)
        return cls(activity_type=str(value), delivered=False, reason=reason, fire_at=fire_at)
