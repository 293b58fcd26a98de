"""Availability lookups on room calendars.

The reservation list fetched here is the authoritative input to the conflict
check; the rendered summary is presentational only.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone, tzinfo
from zoneinfo import ZoneInfo

from roombook.calendar_providers.base import CalendarError, CalendarProvider, Reservation
from roombook.config import settings
from roombook.conflicts import find_conflict
from roombook.formatting import format_date, format_hour, format_time
from roombook.models.catalog import Resource

logger = logging.getLogger(__name__)

END_OF_DAY = time(23, 59, 59, 999000)


def day_window(day: date, tz: tzinfo) -> tuple[datetime, datetime]:
    """``[00:00:00.000, 23:59:59.999]`` of ``day`` in ``tz``."""
    return (
        datetime.combine(day, time.min, tzinfo=tz),
        datetime.combine(day, END_OF_DAY, tzinfo=tz),
    )


class AvailabilityQuery:
    """Fetch existing reservations for a room and check candidates against them."""

    def __init__(self, provider: CalendarProvider) -> None:
        self._provider = provider

    async def fetch_day(
        self, calendar_id: str, day: date, tz: tzinfo
    ) -> list[Reservation]:
        start, end = day_window(day, tz)
        return await self._provider.list_reservations(calendar_id, start, end)

    async def check(
        self, calendar_id: str, start: datetime, end: datetime
    ) -> Reservation | None:
        """Return a reservation conflicting with ``[start, end)``, if any.

        The whole local day is fetched so reservations that merely touch the
        candidate are seen and correctly ignored.
        """
        tz = start.tzinfo or timezone.utc
        existing = await self.fetch_day(calendar_id, start.astimezone(tz).date(), tz)
        if end.astimezone(tz).date() != start.astimezone(tz).date():
            existing += await self.fetch_day(calendar_id, end.astimezone(tz).date(), tz)
        return find_conflict(start, end, existing)

    async def summarize(self, resource: Resource, day: date, tz: ZoneInfo) -> str:
        """Human-readable availability of ``resource`` on ``day``."""
        header = f"📅 **{resource.name}** on **{format_date(day)}**"
        if not resource.calendar_id:
            return header
        try:
            reservations = await self.fetch_day(resource.calendar_id, day, tz)
        except CalendarError:
            logger.exception("Failed to fetch availability for %s", resource.slug)
            return f"{header}\n⚠️ Could not fetch availability"

        if not reservations:
            opening = format_hour(settings.opening_hour)
            closing = format_hour(settings.closing_hour)
            return f"{header}\n✅ Available all day ({opening} - {closing})"

        lines = [header, "", "**Booked slots:**"]
        for r in reservations:
            start = r.start.astimezone(tz)
            end = r.end.astimezone(tz)
            lines.append(
                f"🔴 {format_time(start)} - {format_time(end)}: {r.summary or 'Booked'}"
            )
        return "\n".join(lines)
