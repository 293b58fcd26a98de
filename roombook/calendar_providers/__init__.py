"""Calendar provider abstractions and implementations."""

from .base import (
    CalendarConflictError,
    CalendarError,
    CalendarProvider,
    Reservation,
    ReservationDraft,
)

__all__ = [
    "CalendarProvider",
    "CalendarError",
    "CalendarConflictError",
    "Reservation",
    "ReservationDraft",
]
