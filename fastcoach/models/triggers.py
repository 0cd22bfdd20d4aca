"""
Declarative notification triggers.

A trigger says *when* a notification should fire; the trigger resolver turns
it into a concrete instant.  Values are not range-checked here: a trigger
that makes no sense (negative interval, hour 25) resolves to ``None`` and the
scheduling call is dropped instead of raising in the caller.
"""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class _Trigger(BaseModel):
    model_config = ConfigDict(frozen=True)


class ImmediateTrigger(_Trigger):
    kind: Literal["immediate"] = "immediate"

    def label(self) -> str:
        return "immediate"


class IntervalTrigger(_Trigger):
    """Fire ``seconds`` after now."""
    kind: Literal["interval"] = "interval"
    seconds: float

    def label(self) -> str:
        return f"time_{int(self.seconds)}"


class EventOffsetTrigger(_Trigger):
    """
    Fire ``offset_minutes`` relative to an event: negative is before
    ("15 min before goal"), positive is after ("30 min after wake-up"),
    zero is "when entering stage X".
    When ``event_at`` is omitted the context's ``last_activity`` is used.
    """
    kind: Literal["event_offset"] = "event_offset"
    offset_minutes: int
    event_at: Optional[datetime] = None

    def label(self) -> str:
        direction = "before" if self.offset_minutes < 0 else "after"
        return f"{direction}_{abs(self.offset_minutes)}"


class TimeOfDayTrigger(_Trigger):
    """Fire at the next local ``hour:minute``."""
    kind: Literal["time_of_day"] = "time_of_day"
    hour: int
    minute: int = 0

    def label(self) -> str:
        return f"at_{self.hour:02d}{self.minute:02d}"


class RecurringTrigger(_Trigger):
    """Fire every ``interval_minutes`` counted from the last activity."""
    kind: Literal["recurring"] = "recurring"
    interval_minutes: int

    def label(self) -> str:
        return f"every_{self.interval_minutes}"


Trigger = Annotated[
    Union[ImmediateTrigger, IntervalTrigger, EventOffsetTrigger, TimeOfDayTrigger, RecurringTrigger],
    Field(discriminator="kind"),
]
