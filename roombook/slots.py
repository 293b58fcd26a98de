"""Bookable dates, start times and durations offered to a member.

Rooms open at ``opening_hour`` and close at ``closing_hour`` local time.
Start times fall on a ``slot_minutes`` grid; a start is valid only when the
whole interval ends by closing, so closing time itself is never a start.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from roombook.config import settings
from roombook.formatting import format_duration


@dataclass(frozen=True)
class Option:
    """A labelled choice for the presentation layer."""

    label: str
    value: str


def local_now(tz: ZoneInfo, now: datetime | None = None) -> datetime:
    """``now`` (or the current time) expressed in ``tz``."""
    if now is None:
        return datetime.now(tz)
    if now.tzinfo is None:
        return now.replace(tzinfo=tz)
    return now.astimezone(tz)


def first_start_today(now: datetime, slot_minutes: int | None = None) -> time | None:
    """Next grid boundary at or after ``now``; None if it rolls past midnight."""
    step = slot_minutes or settings.slot_minutes
    minutes = now.hour * 60 + now.minute
    if now.second or now.microsecond:
        minutes += 1
    minutes = -(-minutes // step) * step  # round up to the grid
    if minutes >= 24 * 60:
        return None
    return time(minutes // 60, minutes % 60)


def start_times(
    day: date,
    tz: ZoneInfo,
    duration: int | None = None,
    now: datetime | None = None,
) -> list[time]:
    """Valid start times on ``day``.

    With ``duration`` the interval must end by closing; without it any
    positive duration must fit, so the last start is one slot before closing.
    """
    step = settings.slot_minutes
    opening = settings.opening_hour * 60
    closing = settings.closing_hour * 60
    needed = duration if duration is not None else step

    earliest = opening
    current = local_now(tz, now)
    if day < current.date():
        return []
    if day == current.date():
        first = first_start_today(current, step)
        if first is None:
            return []
        earliest = max(opening, first.hour * 60 + first.minute)

    return [
        time(m // 60, m % 60)
        for m in range(earliest, closing + 1, step)
        if m + needed <= closing
    ]


def is_valid_start(
    day: date,
    hour: int,
    minute: int,
    tz: ZoneInfo,
    duration: int | None = None,
    now: datetime | None = None,
) -> bool:
    try:
        wanted = time(hour, minute)
    except ValueError:
        return False
    return wanted in start_times(day, tz, duration=duration, now=now)


def date_options(
    tz: ZoneInfo,
    now: datetime | None = None,
    days: int | None = None,
    offset: int = 0,
) -> list[Option]:
    """Today and the following days, labelled for buttons."""
    count = days if days is not None else settings.date_options_days
    today = local_now(tz, now).date()
    options: list[Option] = []
    for i in range(offset, offset + count):
        day = today + timedelta(days=i)
        if i == 0:
            label = "Today"
        elif i == 1:
            label = "Tomorrow"
        else:
            label = f"{day:%A} ({day.day}/{day.month})"
        options.append(Option(label, day.isoformat()))
    return options


def is_bookable_date(day: date, tz: ZoneInfo, now: datetime | None = None) -> bool:
    today = local_now(tz, now).date()
    return today <= day < today + timedelta(days=settings.extended_date_days)


def duration_options() -> list[Option]:
    return [Option(format_duration(m), str(m)) for m in settings.duration_options]
