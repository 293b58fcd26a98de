"""Booking service: the boundary the presentation layer talks to.

Owns the shared collaborators and the in-memory stores for booking sessions
and pending cancellations.  Every method is one user action; errors derive
from ``BookingError`` and are rendered by the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from roombook.calendar_providers.base import CalendarProvider
from roombook.catalog.loader import load_catalog
from roombook.config import settings
from roombook.conflicts import HoldRegistry
from roombook.errors import (
    BookingError,
    ResourceNotBookable,
    ResourceNotFound,
    SessionExpired,
)
from roombook.formatting import redact
from roombook.ledger.base import LedgerProvider
from roombook.models.booking import BookingState
from roombook.models.catalog import CommunitySettings, Resource
from roombook.services.availability import AvailabilityQuery
from roombook.services.cancellation import (
    CancellationCandidate,
    CancellationResult,
    CancellationSettlement,
    RefundQuote,
)
from roombook.services.compensation import CompensationQueue
from roombook.services.payment import PaymentSettlement
from roombook.services.reservation import ReservationCommitter, ReservationIndex
from roombook.session import BookingCollaborators, BookingSession, Prompt, SessionStore
from roombook.workflows.room_booking import BookingStep

logger = logging.getLogger(__name__)

SessionKey = tuple[str, str]


@dataclass
class PendingCancellation:
    candidates: list[CancellationCandidate]
    selected: Optional[CancellationCandidate] = None
    quote: Optional[RefundQuote] = None


class BookingService:
    def __init__(
        self,
        calendar: CalendarProvider,
        ledger: LedgerProvider,
        communities: dict[str, CommunitySettings] | None = None,
        clock: Callable[[], datetime] | None = None,
        sessions: SessionStore | None = None,
        cancellations: SessionStore | None = None,
    ) -> None:
        self._communities = (
            communities if communities is not None else load_catalog(settings.catalog_path)
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.index = ReservationIndex()
        self.availability = AvailabilityQuery(calendar)
        self.payments = PaymentSettlement(ledger)
        self.compensations = CompensationQueue(self.payments)
        self.holds = HoldRegistry()
        self.cancellation = CancellationSettlement(calendar, self.payments, self.index)
        self._collaborators = BookingCollaborators(
            availability=self.availability,
            payments=self.payments,
            committer=ReservationCommitter(calendar, self.availability, self.index),
            holds=self.holds,
            compensations=self.compensations,
        )

        self._sessions: SessionStore[SessionKey, BookingSession] = (
            sessions if sessions is not None else SessionStore()
        )
        self._cancellations: SessionStore[SessionKey, PendingCancellation] = (
            cancellations if cancellations is not None else SessionStore()
        )

    # ── Catalog lookups ────────────────────────────────────────

    def community(self, community_id: str) -> CommunitySettings:
        community = self._communities.get(community_id)
        if community is None:
            raise ResourceNotFound(f"Unknown community {community_id!r}")
        return community

    def resource(self, community: CommunitySettings, slug: str) -> Resource:
        room = community.room(slug)
        if room is None:
            raise ResourceNotFound(f"Room {slug!r} not found.")
        if not room.bookable:
            raise ResourceNotBookable(f"Room {slug!r} has no calendar")
        return room

    def timezone_for(self, community: CommunitySettings) -> ZoneInfo:
        return ZoneInfo(community.timezone or settings.calendar_timezone)

    def rooms(self, community_id: str) -> list[Resource]:
        return [r for r in self.community(community_id).rooms if r.bookable]

    async def availability_summary(self, community_id: str, room_slug: str, day: date) -> str:
        community = self.community(community_id)
        room = self.resource(community, room_slug)
        return await self.availability.summarize(room, day, self.timezone_for(community))

    # ── Booking flow ───────────────────────────────────────────

    async def start_booking(
        self, community_id: str, user_id: str, room_slug: str, display_name: str = ""
    ) -> Prompt:
        """Start (or restart) a booking; any in-flight session is discarded."""
        community = self.community(community_id)
        room = self.resource(community, room_slug)
        tz = self.timezone_for(community)
        state = BookingState(
            community_id=community_id,
            user_id=user_id,
            resource_id=room.slug,
            default_name=f"Booked by {display_name}" if display_name else "",
        )
        session = BookingSession(
            state,
            community,
            room,
            self._collaborators,
            tz,
            clock=lambda: self._clock().astimezone(tz),
        )
        self._sessions.put((community_id, user_id), session)
        logger.info("Booking started by %s for %s", redact(user_id), room.slug)
        return await session.start()

    def session(self, community_id: str, user_id: str) -> BookingSession:
        session = self._sessions.get((community_id, user_id))
        if session is None:
            raise SessionExpired("No booking in progress")
        return session

    async def choose_date(self, community_id: str, user_id: str, day: date) -> Prompt:
        return await self._run(community_id, user_id, lambda s: s.choose_date(day))

    async def choose_time(
        self, community_id: str, user_id: str, hour: int, minute: int = 0
    ) -> Prompt:
        return await self._run(community_id, user_id, lambda s: s.choose_time(hour, minute))

    async def choose_duration(self, community_id: str, user_id: str, minutes: int) -> Prompt:
        return await self._run(community_id, user_id, lambda s: s.choose_duration(minutes))

    async def choose_name(
        self, community_id: str, user_id: str, name: str | None = None
    ) -> Prompt:
        return await self._run(community_id, user_id, lambda s: s.choose_name(name))

    async def choose_token(self, community_id: str, user_id: str, symbol: str) -> Prompt:
        return await self._run(community_id, user_id, lambda s: s.choose_token(symbol))

    async def go_back(self, community_id: str, user_id: str, step: BookingStep) -> Prompt:
        return await self._run(community_id, user_id, lambda s: s.go_back(step))

    async def confirm(self, community_id: str, user_id: str) -> Prompt:
        return await self._run(community_id, user_id, lambda s: s.confirm())

    def abort_booking(self, community_id: str, user_id: str) -> bool:
        """Drop the member's in-flight booking. Returns whether one existed."""
        return self._sessions.pop((community_id, user_id)) is not None

    async def _run(self, community_id, user_id, action) -> Prompt:
        key = (community_id, user_id)
        session = self.session(community_id, user_id)
        try:
            return await action(session)
        finally:
            if session.is_done and self._sessions.get(key) is session:
                self._sessions.pop(key)

    async def retry_compensations(self) -> int:
        return await self.compensations.retry_pending()

    # ── Cancellation flow ──────────────────────────────────────

    async def list_cancellations(
        self, community_id: str, user_id: str
    ) -> list[CancellationCandidate]:
        community = self.community(community_id)
        candidates = await self.cancellation.list_candidates(
            community, user_id, self._clock()
        )
        self._cancellations.put((community_id, user_id), PendingCancellation(candidates))
        return candidates

    def select_cancellation(
        self, community_id: str, user_id: str, reservation_id: str
    ) -> tuple[CancellationCandidate, RefundQuote]:
        pending = self._pending_cancellation(community_id, user_id)
        for candidate in pending.candidates:
            if candidate.reservation.id == reservation_id:
                pending.selected = candidate
                pending.quote = self.cancellation.quote(candidate, self._clock())
                return candidate, pending.quote
        raise ResourceNotFound("Booking not found.")

    async def confirm_cancellation(
        self, community_id: str, user_id: str
    ) -> CancellationResult:
        key = (community_id, user_id)
        pending = self._pending_cancellation(community_id, user_id)
        if pending.selected is None:
            raise BookingError("Select a booking to cancel first.")
        result = await self.cancellation.settle(pending.selected, user_id, self._clock())
        self._cancellations.pop(key)
        return result

    def _pending_cancellation(self, community_id: str, user_id: str) -> PendingCancellation:
        pending = self._cancellations.get((community_id, user_id))
        if pending is None:
            raise SessionExpired("No cancellation in progress")
        return pending
