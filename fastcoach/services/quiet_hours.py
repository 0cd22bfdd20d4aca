"""
Quiet hours evaluation.

Only the local wall-clock time matters, never the date, so the check is
unaffected by DST shifts.  Windows are half-open ``[start, end)``; a window
whose start is later than its end wraps midnight (22→6 is quiet from 22:00
to 05:59).  A zero-width window (start == end) is never quiet.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from fastcoach.services.local_time import to_local


@dataclass(frozen=True)
class QuietHoursWindow:
    start_hour: int
    end_hour: int
    enabled: bool = True
    start_minute: int = 0
    end_minute: int = 0

    @property
    def start(self) -> tuple[int, int]:
        return (self.start_hour, self.start_minute)

    @property
    def end(self) -> tuple[int, int]:
        return (self.end_hour, self.end_minute)

    @property
    def wraps_midnight(self) -> bool:
        return self.start > self.end

    def describe(self) -> str:
        return (
            f"{self.start_hour:02d}:{self.start_minute:02d}"
            f"–{self.end_hour:02d}:{self.end_minute:02d}"
        )


def parse_clock(value: Union[int, str]) -> Optional[tuple[int, int]]:
    """
    Accept an hour (``22``, ``"22"``) or ``"HH:MM"``.  Returns ``None`` for
    anything out of range or unparseable.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        hour, minute = value, 0
    else:
        parts = str(value).strip().split(":")
        if len(parts) not in (1, 2) or not all(p.strip().isdigit() for p in parts):
            return None
        hour = int(parts[0])
        minute = int(parts[1]) if len(parts) == 2 else 0
    if not (0 <= hour < 24 and 0 <= minute < 60):
        return None
    return hour, minute


def is_quiet(instant: datetime, window: QuietHoursWindow, tz=None) -> bool:
    """True when ``instant`` falls inside the quiet window (local time in ``tz``)."""
    if not window.enabled:
        return False

    local = to_local(instant, tz) if tz is not None else instant
    now = (local.hour, local.minute)

    if window.start == window.end:
        return False
    if window.wraps_midnight:
        return now >= window.start or now < window.end
    return window.start <= now < window.end
