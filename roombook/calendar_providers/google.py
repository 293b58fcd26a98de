"""Google Calendar provider implementation.

Uses a Google Cloud service account to interact with the Calendar API v3.
The service account JSON key path is read from the ``GOOGLE_SERVICE_ACCOUNT_JSON``
environment variable.  Room calendars are shared with the service account, so
each one is added to the account's calendar list before first use.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, time, timezone
from functools import partial
from typing import Any
from zoneinfo import ZoneInfo

from google.oauth2.service_account import Credentials
from googleapiclient.discovery import build

from roombook.conflicts import find_conflict

from .base import (
    CalendarConflictError,
    CalendarError,
    CalendarProvider,
    Reservation,
    ReservationDraft,
)

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]


class GoogleCalendarProvider(CalendarProvider):
    """CalendarProvider backed by Google Calendar API v3."""

    def __init__(self, service_account_path: str | None = None) -> None:
        sa_path = service_account_path or os.environ.get(
            "GOOGLE_SERVICE_ACCOUNT_JSON", ""
        )
        if not sa_path:
            raise ValueError(
                "Google service account JSON path must be provided via "
                "constructor argument or GOOGLE_SERVICE_ACCOUNT_JSON env var."
            )
        self._credentials = Credentials.from_service_account_file(
            sa_path, scopes=SCOPES
        )
        self._service = build(
            "calendar", "v3", credentials=self._credentials
        )
        self._known_calendars: set[str] = set()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run_in_executor(self, func, *args, **kwargs) -> Any:
        """Run a synchronous Google API call in the default thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, partial(func, *args, **kwargs)
        )

    @staticmethod
    def _to_rfc3339(dt: datetime) -> str:
        """Convert a datetime to an RFC 3339 string with timezone."""
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.isoformat()

    @staticmethod
    def _parse_when(when: dict[str, str]) -> datetime:
        """Parse an event ``start``/``end`` object (timed or all-day)."""
        if "dateTime" in when:
            return datetime.fromisoformat(when["dateTime"].replace("Z", "+00:00"))
        # All-day events carry a bare date in the event's own zone
        tz = ZoneInfo(when.get("timeZone") or "UTC")
        day = datetime.fromisoformat(when["date"]).date()
        return datetime.combine(day, time.min, tzinfo=tz)

    @classmethod
    def _to_reservation(cls, item: dict[str, Any]) -> Reservation:
        return Reservation(
            id=item.get("id", ""),
            summary=item.get("summary", ""),
            description=item.get("description", ""),
            start=cls._parse_when(item["start"]),
            end=cls._parse_when(item["end"]),
            time_zone=item["start"].get("timeZone", ""),
        )

    async def ensure_calendar_in_list(self, calendar_id: str) -> None:
        """Add a shared calendar to the service account's calendar list."""
        if calendar_id in self._known_calendars:
            return
        try:
            response = await self._run_in_executor(
                self._service.calendarList().list().execute
            )
            listed = {item.get("id") for item in response.get("items", [])}
            if calendar_id not in listed:
                await self._run_in_executor(
                    self._service.calendarList()
                    .insert(body={"id": calendar_id})
                    .execute
                )
                logger.info("Added calendar %s to service account list", calendar_id)
        except Exception as exc:
            raise CalendarError(f"Failed to ensure calendar in list: {exc}") from exc
        self._known_calendars.add(calendar_id)

    # ------------------------------------------------------------------
    # CalendarProvider interface
    # ------------------------------------------------------------------

    async def list_reservations(
        self, calendar_id: str, start: datetime, end: datetime
    ) -> list[Reservation]:
        """List single (expanded) events intersecting ``[start, end)``."""
        await self.ensure_calendar_in_list(calendar_id)
        try:
            response = await self._run_in_executor(
                self._service.events()
                .list(
                    calendarId=calendar_id,
                    timeMin=self._to_rfc3339(start),
                    timeMax=self._to_rfc3339(end),
                    singleEvents=True,
                    orderBy="startTime",
                )
                .execute
            )
        except Exception as exc:
            raise CalendarError(f"Failed to list events: {exc}") from exc

        return [
            self._to_reservation(item)
            for item in response.get("items", [])
            if item.get("status") != "cancelled"
        ]

    async def create_reservation(
        self, calendar_id: str, draft: ReservationDraft
    ) -> Reservation:
        """Insert an event after checking the interval is still free."""
        existing = await self.list_reservations(calendar_id, draft.start, draft.end)
        conflicting = find_conflict(draft.start, draft.end, existing)
        if conflicting is not None:
            raise CalendarConflictError(conflicting)

        body: dict[str, Any] = {
            "summary": draft.summary,
            "start": {"dateTime": self._to_rfc3339(draft.start)},
            "end": {"dateTime": self._to_rfc3339(draft.end)},
        }
        if draft.time_zone:
            body["start"]["timeZone"] = draft.time_zone
            body["end"]["timeZone"] = draft.time_zone
        if draft.description:
            body["description"] = draft.description

        try:
            result = await self._run_in_executor(
                self._service.events()
                .insert(calendarId=calendar_id, body=body)
                .execute
            )
        except Exception as exc:
            raise CalendarError(f"Failed to create event: {exc}") from exc

        logger.info("Created event %s on calendar %s", result["id"], calendar_id)

        return Reservation(
            id=result["id"],
            summary=draft.summary,
            description=draft.description,
            start=draft.start,
            end=draft.end,
            time_zone=draft.time_zone,
        )

    async def delete_reservation(self, calendar_id: str, reservation_id: str) -> None:
        """Delete an event from Google Calendar."""
        try:
            await self._run_in_executor(
                self._service.events()
                .delete(calendarId=calendar_id, eventId=reservation_id)
                .execute
            )
        except Exception as exc:
            raise CalendarError(f"Failed to delete event: {exc}") from exc
        logger.info(
            "Deleted event %s on calendar %s", reservation_id, calendar_id
        )
