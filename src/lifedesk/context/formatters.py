"""Helpers that turn raw workspace values into text the model reads easily."""

import datetime
from typing import (
    Any,
    Optional,
)

NO_PRIORITY = "no priority"
URGENT_WITHIN_DAYS = 3

_PRIORITY_LABELS = {
    1: "P1 (critical)",
    2: "P2 (important)",
    3: "P3 (fairly important)",
    4: "P4 (normal)",
    5: "P5 (low)",
}


def parse_date(value: Any) -> Optional[datetime.date]:
    """
    Coerce *value* to a date.

    Accepts ``date`` / ``datetime`` objects and strings starting with ``YYYY-MM-DD`` (so
    ``"2024-05-01 10:00:00"`` and ISO timestamps work too).  Returns ``None`` for anything else.
    """
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, str) and len(value) >= 10:
        try:
            return datetime.date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


def days_between(start: datetime.date, end: datetime.date) -> int:
    """Whole days from *start* to *end* (negative when *end* is earlier)."""
    return (end - start).days


def format_priority(priority: Optional[int]) -> str:
    if not priority or priority == 999:
        return NO_PRIORITY
    return _PRIORITY_LABELS.get(priority, f"P{priority}")


def format_relative_time(day: datetime.date, today: datetime.date) -> str:
    """``today`` / ``tomorrow`` / ``yesterday`` / ``in N days`` / ``N days ago``."""
    delta = days_between(today, day)
    if delta == 0:
        return "today"
    if delta == 1:
        return "tomorrow"
    if delta == -1:
        return "yesterday"
    if delta > 0:
        return f"in {delta} days"
    return f"{-delta} days ago"


def format_deadline(deadline: datetime.date, today: datetime.date) -> str:
    delta = days_between(today, deadline)
    if delta < 0:
        return f"{deadline.isoformat()} (overdue by {-delta} days)"
    if delta == 0:
        return f"{deadline.isoformat()} (due today)"
    if delta == 1:
        return f"{deadline.isoformat()} (due tomorrow)"
    return f"{deadline.isoformat()} (in {delta} days)"


def format_created_at(created: datetime.date, today: datetime.date) -> str:
    return f"created {days_between(created, today)} days ago"


def is_overdue(deadline: Optional[datetime.date], today: datetime.date) -> bool:
    return deadline is not None and deadline < today


def is_urgent(deadline: Optional[datetime.date], today: datetime.date) -> bool:
    """Due today or within the next three days."""
    return deadline is not None and 0 <= days_between(today, deadline) <= URGENT_WITHIN_DAYS
