"""Late / early flags computed from wall-clock "HH:MM" strings.

Both sides are compared as minutes since midnight on the same 24h clock.
Schedules that cross midnight (e.g. a 22:00 to 01:00 shift) are not
supported: a 01:00 time-out reads as earlier than any evening clock time.
"""
from __future__ import annotations

import re
from datetime import datetime
from typing import Optional

from itrack.services.errors import ValidationError

CLOCK_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def minutes_of_day(clock: str) -> int:
    match = CLOCK_RE.match(clock.strip()) if clock else None
    if not match:
        raise ValidationError(f"Invalid clock time {clock!r} (expected HH:MM)")
    return int(match.group(1)) * 60 + int(match.group(2))


def clock_string(moment: datetime) -> str:
    return f"{moment.hour:02d}:{moment.minute:02d}"


def compute_late(now_clock: str, scheduled: Optional[str]) -> bool:
    """True when ``now_clock`` is strictly after the scheduled time-in."""
    if not scheduled:
        return False
    return minutes_of_day(now_clock) > minutes_of_day(scheduled)


def compute_early(now_clock: str, scheduled: Optional[str]) -> bool:
    """True when ``now_clock`` is strictly before the scheduled time-out."""
    if not scheduled:
        return False
    return minutes_of_day(now_clock) < minutes_of_day(scheduled)
