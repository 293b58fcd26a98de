"""Interval conflict detection and short-lived reservation holds.

Intervals are half-open ``[start, end)``: a reservation ending at 11:00 and
one starting at 11:00 do not conflict, so back-to-back bookings are legal.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Protocol, TypeVar

log = logging.getLogger("roombook.conflicts")


class Interval(Protocol):
    start: datetime
    end: datetime


T = TypeVar("T", bound=Interval)


def overlaps(a: Interval, b: Interval) -> bool:
    """True if the half-open intervals ``a`` and ``b`` intersect."""
    return a.start < b.end and a.end > b.start


@dataclass(frozen=True)
class Span:
    """A bare candidate interval."""

    start: datetime
    end: datetime


def find_conflict(start: datetime, end: datetime, existing: Iterable[T]) -> T | None:
    """Return the first item of ``existing`` overlapping ``[start, end)``.

    No ordering guarantee is made on which conflict is reported when
    several exist.
    """
    candidate = Span(start, end)
    for item in existing:
        if overlaps(candidate, item):
            return item
    return None


@dataclass(frozen=True)
class Hold:
    """A tentative lock on an interval of one calendar."""

    id: int
    calendar_id: str
    start: datetime
    end: datetime
    owner: str


class HoldRegistry:
    """In-process holds taken between the availability check and the commit.

    A hold is taken before the user is charged and released on every exit
    path.  ``acquire`` performs no awaits, so under asyncio it is atomic
    with respect to other users' flows in the same process.
    """

    def __init__(self) -> None:
        self._holds: dict[str, dict[int, Hold]] = {}
        self._ids = itertools.count(1)

    def conflicting(
        self, calendar_id: str, start: datetime, end: datetime, owner: str = ""
    ) -> Hold | None:
        """Return a hold by someone other than ``owner`` overlapping the interval."""
        others = (
            h for h in self._holds.get(calendar_id, {}).values() if h.owner != owner
        )
        return find_conflict(start, end, others)

    def acquire(
        self, calendar_id: str, start: datetime, end: datetime, owner: str
    ) -> Hold | None:
        """Take a hold, or return None if another owner holds an overlapping one."""
        if self.conflicting(calendar_id, start, end, owner) is not None:
            return None
        hold = Hold(next(self._ids), calendar_id, start, end, owner)
        self._holds.setdefault(calendar_id, {})[hold.id] = hold
        log.debug("Hold %d taken on %s (%s - %s)", hold.id, calendar_id, start, end)
        return hold

    def release(self, hold: Hold) -> None:
        holds = self._holds.get(hold.calendar_id)
        if holds is None:
            return
        holds.pop(hold.id, None)
        if not holds:
            del self._holds[hold.calendar_id]
        log.debug("Hold %d released on %s", hold.id, hold.calendar_id)

    def __len__(self) -> int:
        return sum(len(h) for h in self._holds.values())
