"""Cancellation of a member's future reservations with a time-based refund.

Refund: ``price_amount`` in full when the reservation starts more than
``full_refund_notice_hours`` from now, ``late_refund_percent`` otherwise.
The comparison is strict, so exactly 24 hours of notice gets the late rate.

Settling is journalled so a retry after a partial failure never credits
twice:

    REFUND_PENDING -> credit -> REFUNDED(tx) -> delete -> (done)

A failed credit rolls the journal back and keeps the reservation.  A failed
delete leaves the entry at REFUNDED and the next attempt only deletes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from roombook.calendar_providers.base import CalendarError, CalendarProvider, Reservation
from roombook.config import settings
from roombook.errors import (
    BookingError,
    CancellationInProgress,
    RefundSubmissionFailed,
    ResourceNotFound,
)
from roombook.formatting import format_amount, redact
from roombook.ledger.base import LedgerError
from roombook.models.catalog import CommunitySettings, TokenConfig
from roombook.services.payment import PaymentSettlement
from roombook.services.pricing import PriceCalculator
from roombook.services.reservation import ReservationIndex, is_owned_by

logger = logging.getLogger(__name__)


@dataclass
class CancellationCandidate:
    """A reservation the member may cancel, with the amount it is refunded on."""

    reservation: Reservation
    resource_name: str
    resource_slug: str
    calendar_id: str
    token: Optional[TokenConfig]
    price_amount: int  # smallest units


@dataclass(frozen=True)
class RefundQuote:
    hours_until_start: float
    percent: int
    amount: int

    @property
    def full(self) -> bool:
        return self.percent == 100


@dataclass(frozen=True)
class CancellationResult:
    reservation: Reservation
    quote: RefundQuote
    refund_ref: Optional[str]


def refund_percent(hours_until_start: float) -> int:
    if hours_until_start > settings.full_refund_notice_hours:
        return 100
    return settings.late_refund_percent


def refund_amount(price_amount: int, percent: int) -> int:
    """Refund in smallest units, rounded down."""
    return price_amount * percent // 100


# ── Journal ───────────────────────────────────────────────────────


class JournalState(str, Enum):
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"


@dataclass
class JournalEntry:
    state: JournalState
    amount: int = 0
    refund_ref: Optional[str] = None


class CancellationJournal:
    """Progress of in-flight cancellations, keyed by reservation id."""

    def __init__(self) -> None:
        self._entries: dict[str, JournalEntry] = {}

    def get(self, reservation_id: str) -> JournalEntry | None:
        return self._entries.get(reservation_id)

    def begin(self, reservation_id: str) -> JournalEntry | None:
        """Mark a cancellation as started.

        Returns the existing entry when the refund was already credited, or
        None when this call owns a fresh cancellation.

        Raises:
            CancellationInProgress: Another attempt is between mark and credit.
        """
        entry = self._entries.get(reservation_id)
        if entry is not None:
            if entry.state is JournalState.REFUND_PENDING:
                raise CancellationInProgress("Cancellation already in progress")
            return entry
        self._entries[reservation_id] = JournalEntry(JournalState.REFUND_PENDING)
        return None

    def record_refund(self, reservation_id: str, amount: int, refund_ref: str | None) -> None:
        self._entries[reservation_id] = JournalEntry(
            JournalState.REFUNDED, amount=amount, refund_ref=refund_ref
        )

    def clear(self, reservation_id: str) -> None:
        self._entries.pop(reservation_id, None)


# ── Settlement ────────────────────────────────────────────────────


class CancellationSettlement:
    def __init__(
        self,
        provider: CalendarProvider,
        payments: PaymentSettlement,
        index: ReservationIndex,
        journal: CancellationJournal | None = None,
    ) -> None:
        self._provider = provider
        self._payments = payments
        self._index = index
        self._journal = journal or CancellationJournal()

    @property
    def journal(self) -> CancellationJournal:
        return self._journal

    async def list_candidates(
        self, community: CommunitySettings, user_id: str, now: datetime
    ) -> list[CancellationCandidate]:
        """The member's reservations in the cancellation window, soonest first.

        A room whose calendar cannot be read is skipped.
        """
        pricing = PriceCalculator(community)
        window_end = now + timedelta(days=settings.cancellation_window_days)
        candidates: list[CancellationCandidate] = []

        for room in community.rooms:
            if not room.calendar_id:
                continue
            try:
                reservations = await self._provider.list_reservations(
                    room.calendar_id, now, window_end
                )
            except CalendarError as exc:
                logger.warning("Skipping %s: could not list reservations: %s", room.slug, exc)
                continue

            for reservation in reservations:
                if not is_owned_by(reservation, user_id, self._index):
                    continue
                token, amount = self._price_basis(pricing, community, room, reservation)
                candidates.append(
                    CancellationCandidate(
                        reservation=reservation,
                        resource_name=room.name,
                        resource_slug=room.slug,
                        calendar_id=room.calendar_id,
                        token=token,
                        price_amount=amount,
                    )
                )

        candidates.sort(key=lambda c: c.reservation.start)
        logger.info("Found %d cancellable bookings for %s", len(candidates), redact(user_id))
        return candidates

    def _price_basis(self, pricing, community, room, reservation):
        record = self._index.get(reservation.id)
        if settings.refund_basis == "booked_price" and record is not None:
            token = community.token(record.token)
            if token is not None:
                return token, record.price_amount

        symbol = pricing.default_token(room)
        if symbol is None:
            return None, 0
        price = pricing.price(room, symbol, reservation.duration_minutes)
        return price.token, price.amount

    def quote(self, candidate: CancellationCandidate, now: datetime) -> RefundQuote:
        hours = (candidate.reservation.start - now).total_seconds() / 3600
        percent = refund_percent(hours)
        return RefundQuote(
            hours_until_start=hours,
            percent=percent,
            amount=refund_amount(candidate.price_amount, percent),
        )

    async def settle(
        self, candidate: CancellationCandidate, user_id: str, now: datetime
    ) -> CancellationResult:
        """Refund and delete ``candidate``.

        Raises:
            ResourceNotFound: ``user_id`` does not own the reservation.
            CancellationInProgress: A concurrent attempt is mid-refund.
            RefundSubmissionFailed: The credit failed; the reservation is kept.
            BookingError: The refund went through but the delete failed.
        """
        reservation = candidate.reservation
        if not is_owned_by(reservation, user_id, self._index):
            raise ResourceNotFound("Booking not found.")

        quote = self.quote(candidate, now)
        entry = self._journal.begin(reservation.id)
        if entry is None:
            try:
                refund_ref = await self._credit(candidate, user_id, quote)
            except BaseException:
                self._journal.clear(reservation.id)
                raise
            self._journal.record_refund(reservation.id, quote.amount, refund_ref)
        else:
            logger.info(
                "Reservation %s already refunded (tx %s); retrying delete only",
                reservation.id, entry.refund_ref,
            )
            refund_ref = entry.refund_ref
            quote = RefundQuote(quote.hours_until_start, quote.percent, entry.amount)

        try:
            await self._provider.delete_reservation(candidate.calendar_id, reservation.id)
        except CalendarError as exc:
            logger.error(
                "Refunded reservation %s (tx %s) but could not delete it: %s",
                reservation.id, refund_ref, exc,
            )
            raise BookingError(
                "Your refund was sent but the booking could not be removed. "
                "Please try cancelling again."
            ) from exc

        self._index.remove(reservation.id)
        self._journal.clear(reservation.id)
        logger.info(
            "Cancelled reservation %s for %s (%d%% refund, tx %s)",
            reservation.id, redact(user_id), quote.percent, refund_ref,
        )
        return CancellationResult(reservation=reservation, quote=quote, refund_ref=refund_ref)

    async def _credit(
        self, candidate: CancellationCandidate, user_id: str, quote: RefundQuote
    ) -> str | None:
        if quote.amount <= 0 or candidate.token is None:
            return None
        try:
            return await self._payments.credit(user_id, candidate.token, quote.amount)
        except LedgerError as exc:
            logger.error(
                "Refund of %s %s for reservation %s failed: %s",
                format_amount(quote.amount, candidate.token.decimals),
                candidate.token.symbol,
                candidate.reservation.id,
                exc,
            )
            raise RefundSubmissionFailed(str(exc), amount=quote.amount) from exc
