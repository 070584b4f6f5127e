"""Session state derived from an intern's attendance events.

Every derivation works on a full snapshot of the intern's events: filter in
memory, sort by ``created_at`` descending, take the head. Running the same
functions over each live snapshot keeps dashboards consistent with the
one-shot queries.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Optional

from itrack.models.attendance import AttendanceEvent, AttendanceStatus, AttendanceSummary
from itrack.services.errors import ValidationError

DATE_RANGES = ("all", "today", "week", "month", "custom")


def _created_key(event: AttendanceEvent) -> datetime:
    return event.created_at or datetime.min


def order_history(events: Iterable[AttendanceEvent]) -> list[AttendanceEvent]:
    """Newest first; events without ``created_at`` sort last."""
    return sorted(events, key=_created_key, reverse=True)


def _latest(events: Iterable[AttendanceEvent], predicate: Callable[[AttendanceEvent], bool]) -> Optional[AttendanceEvent]:
    matches = order_history(e for e in events if predicate(e))
    return matches[0] if matches else None


def is_current(event: AttendanceEvent) -> bool:
    return event.status == AttendanceStatus.APPROVED and event.clock_out is None


def is_pending(event: AttendanceEvent) -> bool:
    return event.status == AttendanceStatus.PENDING


def current_session(events: Iterable[AttendanceEvent]) -> Optional[AttendanceEvent]:
    """The approved open session; the latest one wins if several exist."""
    return _latest(events, is_current)


def pending_session(events: Iterable[AttendanceEvent]) -> Optional[AttendanceEvent]:
    return _latest(events, is_pending)


def start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def has_completed_today(history: Iterable[AttendanceEvent], now: datetime) -> bool:
    """True once an approved, clocked-out cycle started on ``now``'s calendar day."""
    day_start = start_of_day(now)
    day_end = day_start + timedelta(days=1)
    return any(
        day_start <= e.clock_in < day_end
        and e.clock_out is not None
        and e.status == AttendanceStatus.APPROVED
        for e in history
    )


def session_state(events: Iterable[AttendanceEvent], now: datetime) -> dict:
    """Everything an intern dashboard renders, from one snapshot."""
    history = order_history(events)
    return {
        "current": current_session(history),
        "pending": pending_session(history),
        "completed_today": has_completed_today(history, now),
        "history": history,
    }


def _month_bounds(month: str) -> tuple[datetime, datetime]:
    try:
        first = datetime.strptime(month, "%Y-%m")
    except ValueError:
        raise ValidationError(f"Invalid month {month!r} (expected YYYY-MM)")
    if first.month == 12:
        following = first.replace(year=first.year + 1, month=1)
    else:
        following = first.replace(month=first.month + 1)
    return first, following


def filter_by_range(
    events: Iterable[AttendanceEvent],
    date_range: str,
    now: datetime,
    month: Optional[str] = None,
    status: Optional[str] = None,
) -> list[AttendanceEvent]:
    """History filters of the attendance history page, keyed on ``created_at``."""
    if date_range not in DATE_RANGES:
        raise ValidationError(f"Unknown date range {date_range!r}")

    selected = [e for e in events if e.created_at is not None or date_range == "all"]
    if date_range == "today":
        today: date = now.date()
        selected = [e for e in selected if e.created_at.date() == today]
    elif date_range == "week":
        week_ago = now - timedelta(days=7)
        selected = [e for e in selected if e.created_at >= week_ago]
    elif date_range == "month":
        month_start = start_of_day(now).replace(day=1)
        selected = [e for e in selected if e.created_at >= month_start]
    elif date_range == "custom":
        if not month:
            raise ValidationError("A month (YYYY-MM) is required for a custom range")
        first, following = _month_bounds(month)
        selected = [e for e in selected if first <= e.created_at < following]

    if status and status != "all":
        selected = [e for e in selected if e.status == status]
    return order_history(selected)


def summarize(events: Iterable[AttendanceEvent]) -> AttendanceSummary:
    events = list(events)
    completed = [e for e in events if e.clock_out is not None]
    total_hours = sum(e.total_hours for e in completed)
    total_days = len({(e.created_at or e.clock_in).date() for e in completed})
    return AttendanceSummary(
        total_hours=round(total_hours, 2),
        total_days=total_days,
        average_hours=round(total_hours / total_days, 2) if total_days else 0.0,
        approved_count=sum(1 for e in events if e.status == AttendanceStatus.APPROVED),
        pending_count=sum(1 for e in events if e.status == AttendanceStatus.PENDING),
        rejected_count=sum(1 for e in events if e.status == AttendanceStatus.REJECTED),
    )
