"""Abstract base class for calendar providers.

The calendar is the only system of record for reservations: there is no
separate reservation database.  Any calendar backend (Google, CalDAV, ...)
implements this ABC.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime


@dataclass
class ReservationDraft:
    """A reservation to be written to a room calendar."""

    summary: str
    start: datetime
    end: datetime
    description: str = ""
    time_zone: str = ""


@dataclass
class Reservation:
    """A reservation as stored on a room calendar."""

    id: str
    summary: str
    start: datetime
    end: datetime
    description: str = ""
    time_zone: str = ""

    @property
    def duration_minutes(self) -> int:
        return round((self.end - self.start).total_seconds() / 60)


class CalendarError(Exception):
    """Raised when the calendar backend cannot complete a request."""


class CalendarConflictError(CalendarError):
    """Raised by ``create_reservation`` when the interval is already taken."""

    def __init__(self, conflicting: Reservation) -> None:
        super().__init__(
            f'Event conflicts with existing event: "{conflicting.summary}" '
            f"({conflicting.start.isoformat()} - {conflicting.end.isoformat()})"
        )
        self.conflicting = conflicting


class CalendarProvider(ABC):
    """Abstract calendar backend.

    Subclasses must implement listing, creation and deletion of
    reservations.  All methods raise ``CalendarError`` on backend failure.
    """

    @abstractmethod
    async def list_reservations(
        self, calendar_id: str, start: datetime, end: datetime
    ) -> list[Reservation]:
        """Return reservations whose interval intersects ``[start, end)``.

        Args:
            calendar_id: The room calendar to query.
            start: Beginning of the search window.
            end: End of the search window.

        Returns:
            Reservations ordered by start time.
        """

    @abstractmethod
    async def create_reservation(
        self, calendar_id: str, draft: ReservationDraft
    ) -> Reservation:
        """Write a reservation.

        Raises:
            CalendarConflictError: If an existing reservation overlaps
                ``[draft.start, draft.end)``.
        """

    @abstractmethod
    async def delete_reservation(self, calendar_id: str, reservation_id: str) -> None:
        """Delete a reservation from a room calendar."""
