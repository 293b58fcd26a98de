"""Reservation commit and ownership tracking.

Ownership lives in two places.  ``ReservationIndex`` is a structured record
written when a reservation is committed; the reservation description carries
an ``Owner ID: <user id>`` line for display and for recovering ownership once
the in-memory index has been lost (e.g. after a restart).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from roombook.calendar_providers.base import (
    CalendarConflictError,
    CalendarError,
    CalendarProvider,
    Reservation,
    ReservationDraft,
)
from roombook.errors import CommitConflict, CommitFailed
from roombook.formatting import format_date, format_time
from roombook.services.availability import AvailabilityQuery

logger = logging.getLogger(__name__)

OWNER_MARKER = "Owner ID: "

# Older reservations were written with "User ID:".  The id must be the whole
# rest of the line so one id never matches as a prefix of another.
_OWNER_LINE = re.compile(r"^(?:Owner|User) ID:[ \t]*(\S+)[ \t]*$", re.MULTILINE)


@dataclass
class OwnershipRecord:
    """Who booked a reservation and what they paid."""

    reservation_id: str
    owner_id: str
    community_id: str
    room_slug: str
    token: str
    price_amount: int  # smallest units
    payment_ref: str


class ReservationIndex:
    """In-memory side-index of reservation ownership."""

    def __init__(self) -> None:
        self._records: dict[str, OwnershipRecord] = {}

    def add(self, record: OwnershipRecord) -> None:
        self._records[record.reservation_id] = record

    def get(self, reservation_id: str) -> OwnershipRecord | None:
        return self._records.get(reservation_id)

    def remove(self, reservation_id: str) -> None:
        self._records.pop(reservation_id, None)

    def __len__(self) -> int:
        return len(self._records)


def build_description(
    owner_id: str,
    amount_display: str,
    payment_ref: str,
    network: str,
    booked_at: datetime,
) -> str:
    """Reservation description: price, cancel hint, ownership and payment lines."""
    return (
        f"Booked on {format_date(booked_at)} at {format_time(booked_at)} "
        f"for {amount_display}\n"
        "\n"
        "To cancel, use the cancel command.\n"
        "\n"
        f"{OWNER_MARKER}{owner_id}\n"
        f"Booking TX: {payment_ref}\n"
        f"Booking Chain: {network}"
    )


def owner_from_description(description: str) -> str | None:
    """The owner id recorded on its own line of ``description``, if any."""
    match = _OWNER_LINE.search(description or "")
    return match.group(1) if match else None


def is_owned_by(
    reservation: Reservation, user_id: str, index: ReservationIndex
) -> bool:
    """Ownership check: side-index first, description marker as fallback."""
    record = index.get(reservation.id)
    if record is not None:
        return record.owner_id == user_id
    return owner_from_description(reservation.description) == user_id


class ReservationCommitter:
    """Write a paid-for reservation to its room calendar."""

    def __init__(
        self,
        provider: CalendarProvider,
        availability: AvailabilityQuery,
        index: ReservationIndex,
    ) -> None:
        self._provider = provider
        self._availability = availability
        self._index = index

    async def commit(
        self,
        calendar_id: str,
        draft: ReservationDraft,
        record: OwnershipRecord,
    ) -> Reservation:
        """Re-check the interval, create the reservation and index it.

        ``record.reservation_id`` is filled in from the created reservation.

        Raises:
            CommitConflict: The interval was taken since the first check,
                either at the second check or when writing.
            CommitFailed: The calendar rejected the write for another reason.
        """
        try:
            conflict = await self._availability.check(calendar_id, draft.start, draft.end)
        except CalendarError as exc:
            raise CommitFailed(
                f"Could not re-check availability: {exc}",
                payment_ref=record.payment_ref,
                amount=record.price_amount,
            ) from exc
        if conflict is not None:
            raise CommitConflict(
                conflict, payment_ref=record.payment_ref, amount=record.price_amount
            )

        try:
            reservation = await self._provider.create_reservation(calendar_id, draft)
        except CalendarConflictError as exc:
            raise CommitConflict(
                exc.conflicting,
                payment_ref=record.payment_ref,
                amount=record.price_amount,
            ) from exc
        except CalendarError as exc:
            raise CommitFailed(
                f"Failed to create calendar event: {exc}",
                payment_ref=record.payment_ref,
                amount=record.price_amount,
            ) from exc

        record.reservation_id = reservation.id
        self._index.add(record)
        logger.info(
            "Reservation %s created on %s (%s - %s)",
            reservation.id, calendar_id, reservation.start, reservation.end,
        )
        return reservation
