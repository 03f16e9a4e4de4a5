"""Week arithmetic shared by the ledger and the capacity projector.

Weeks run Monday..Sunday. ``week_start`` (the Monday) is the identity of a
week everywhere in the engine; ISO week number and year are derived for
display only, because ``(week_number, year)`` pairs are ambiguous around the
new year (2024-12-30 is ISO week 1 of 2025).
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import NamedTuple


class WeekKey(NamedTuple):
    """Composite key for one weekly cell of one phase allocation."""

    phase_allocation_id: str
    week_start: date


def to_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def week_start(value: date | datetime) -> date:
    """Return the Monday of the week containing ``value``."""
    d = to_date(value)
    return d - timedelta(days=d.weekday())


def week_end(value: date | datetime) -> date:
    """Return the Sunday of the week containing ``value``."""
    return week_start(value) + timedelta(days=6)


def iso_week(value: date | datetime) -> tuple[int, int]:
    """Return ``(iso_year, iso_week_number)`` for display."""
    iso = to_date(value).isocalendar()
    return iso[0], iso[1]


def mondays_between(start: date | datetime, end: date | datetime) -> list[date]:
    """Every canonical Monday from the week of ``start`` up to ``end`` inclusive."""
    monday = week_start(start)
    last = to_date(end)
    weeks = []
    while monday <= last:
        weeks.append(monday)
        monday += timedelta(days=7)
    return weeks


def nearest_monday(value: date, mondays: list[date], tolerance_days: int = 7) -> date | None:
    """Pick the single Monday in ``mondays`` that ``value`` belongs to.

    A candidate matches when it lies strictly less than ``tolerance_days``
    away. When two Mondays qualify the closer wins, and the earlier one on a
    tie, so a row is never attributed to two weeks.
    """
    best = None
    best_distance = None
    for monday in mondays:
        distance = abs((value - monday).days)
        if distance >= tolerance_days:
            continue
        if best_distance is None or distance < best_distance:
            best, best_distance = monday, distance
    return best
