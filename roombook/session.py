"""Per-member booking session: drives the booking conversation FSM.

Each member who starts a booking gets a BookingSession that:
  1. Holds the BookingState (date, time, duration, name, token)
  2. Accepts exactly one kind of input per step and advances
  3. Re-renders price and balance every time Confirming is entered
  4. On confirm: conflict check, hold, debit, commit, and a compensating
     credit if the commit fails after the debit

Inputs to one session are serialized with an ``asyncio.Lock``; a second
"confirm" waits for the first and then finds the session finished.

Sessions live in a ``SessionStore`` keyed by ``(community_id, user_id)``
with a TTL and a size bound.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Generic, Hashable, Optional, TypeVar
from zoneinfo import ZoneInfo

from roombook import slots
from roombook.calendar_providers.base import CalendarError, ReservationDraft
from roombook.config import settings
from roombook.conflicts import HoldRegistry
from roombook.errors import (
    BookingError,
    CommitFailed,
    InvalidStep,
    PaymentSubmissionFailed,
    SessionExpired,
    SlotUnavailable,
)
from roombook.formatting import (
    format_amount,
    format_date,
    format_duration,
    format_time,
    redact,
)
from roombook.models.booking import BookingState
from roombook.models.catalog import CommunitySettings, Resource
from roombook.services.availability import AvailabilityQuery
from roombook.services.compensation import CompensationQueue
from roombook.services.payment import PaymentSettlement
from roombook.services.pricing import Price, PriceCalculator
from roombook.services.reservation import (
    OwnershipRecord,
    ReservationCommitter,
    build_description,
)
from roombook.workflows.room_booking import BookingStep, step_index

log = logging.getLogger("roombook.session")

MAX_NAME_LENGTH = 100


@dataclass
class Prompt:
    """What the presentation layer shows after an input."""

    step: str
    message: str
    options: list[slots.Option] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)
    done: bool = False


@dataclass
class BookingCollaborators:
    """Shared services every session talks to."""

    availability: AvailabilityQuery
    payments: PaymentSettlement
    committer: ReservationCommitter
    holds: HoldRegistry
    compensations: CompensationQueue


class BookingSession:
    """One member's booking conversation for one room.

    Typical lifecycle::

        session = BookingSession(state, community, room, collaborators, tz)
        prompt = await session.start()
        prompt = await session.choose_date(date(2026, 3, 3))
        prompt = await session.choose_time(14, 30)
        prompt = await session.choose_duration(90)
        prompt = await session.choose_name(None)   # accept the default
        prompt = await session.confirm()
    """

    def __init__(
        self,
        state: BookingState,
        community: CommunitySettings,
        resource: Resource,
        collaborators: BookingCollaborators,
        tz: ZoneInfo,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._state = state
        self._community = community
        self._resource = resource
        self._c = collaborators
        self._tz = tz
        self._clock = clock or (lambda: datetime.now(tz))
        self._pricing = PriceCalculator(community)
        self._lock = asyncio.Lock()
        self._outcome: str | None = None  # "completed" | "failed"

    # ── Properties ─────────────────────────────────────────────

    @property
    def state(self) -> BookingState:
        return self._state

    @property
    def current_step(self) -> BookingStep:
        return self._state.step

    @property
    def outcome(self) -> str | None:
        return self._outcome

    @property
    def is_done(self) -> bool:
        return self._outcome is not None

    # ── Inputs ─────────────────────────────────────────────────

    async def start(self) -> Prompt:
        async with self._lock:
            self._ensure_live()
            return await self._prompt_for(self._state.step)

    async def choose_date(self, day: date) -> Prompt:
        async with self._lock:
            self._expect(BookingStep.SELECTING_DATE)
            now = self._clock()
            if not slots.is_bookable_date(day, self._tz, now=now):
                raise BookingError("That date can't be booked.")
            if not slots.start_times(day, self._tz, now=now):
                raise BookingError(
                    f"No time slots left on {format_date(day)}. Please pick another day."
                )
            self._state.selected_date = day
            return await self._advance(BookingStep.SELECTING_TIME)

    async def choose_time(self, hour: int, minute: int = 0) -> Prompt:
        async with self._lock:
            self._expect(BookingStep.SELECTING_TIME)
            day = self._state.selected_date
            if not slots.is_valid_start(day, hour, minute, self._tz, now=self._clock()):
                raise BookingError("That start time isn't available.")
            self._state.selected_hour = hour
            self._state.selected_minute = minute
            return await self._advance(BookingStep.SELECTING_DURATION)

    async def choose_duration(self, minutes: int) -> Prompt:
        async with self._lock:
            self._expect(BookingStep.SELECTING_DURATION)
            s = self._state
            if minutes not in settings.duration_options or not slots.is_valid_start(
                s.selected_date,
                s.selected_hour,
                s.selected_minute,
                self._tz,
                duration=minutes,
                now=self._clock(),
            ):
                raise BookingError(
                    f"A {format_duration(minutes)} booking doesn't fit before closing."
                )

            start = datetime(
                s.selected_date.year,
                s.selected_date.month,
                s.selected_date.day,
                s.selected_hour,
                s.selected_minute,
                tzinfo=self._tz,
            )
            end = start + timedelta(minutes=minutes)
            try:
                await self._check_free(start, end)
            except SlotUnavailable:
                self._back_to_time()
                raise

            s.duration = minutes
            s.start_time = start
            s.end_time = end
            return await self._advance(BookingStep.NAMING_EVENT)

    async def choose_name(self, name: str | None = None) -> Prompt:
        async with self._lock:
            self._expect(BookingStep.NAMING_EVENT)
            name = (name or "").strip()[:MAX_NAME_LENGTH]
            self._state.name = name or self._state.default_name or "Room Booking"
            return await self._advance(BookingStep.CONFIRMING)

    async def choose_token(self, symbol: str) -> Prompt:
        async with self._lock:
            self._expect(BookingStep.CONFIRMING)
            if self._resource.rate_for(symbol) is None or self._community.token(symbol) is None:
                raise BookingError(f"{self._resource.name} can't be paid with {symbol}.")
            self._state.token = symbol
            return await self._prompt_for(BookingStep.CONFIRMING)

    async def go_back(self, step: BookingStep) -> Prompt:
        """Return to a strictly earlier step, clearing it and every later step."""
        async with self._lock:
            self._ensure_live()
            current = self._state.step
            if current is BookingStep.PROCESSING or step_index(step) >= step_index(current):
                raise InvalidStep(f"Can't go back to {step.value} from {current.value}")
            self._state.clear_from(step)
            self._state.step = step
            log.info("Session %s went back to %s", self._key_for_log(), step.value)
            return await self._prompt_for(step)

    async def confirm(self) -> Prompt:
        """Pay and commit. Ends the session on success or after a commit failure."""
        async with self._lock:
            self._expect(BookingStep.CONFIRMING)
            s = self._state
            symbol = s.token or self._pricing.default_token(self._resource)
            if symbol is None:
                raise BookingError(f"{self._resource.name} has no price configured.")
            price = self._pricing.price(self._resource, symbol, s.duration)
            s.step = BookingStep.PROCESSING
            return await self._process(price)

    # ── Processing ─────────────────────────────────────────────

    async def _process(self, price: Price) -> Prompt:
        s = self._state
        calendar_id = self._resource.calendar_id
        owner = f"{s.community_id}:{s.user_id}"

        try:
            await self._check_free(s.start_time, s.end_time)
        except SlotUnavailable:
            self._back_to_time()
            raise
        except BaseException:
            s.step = BookingStep.CONFIRMING
            raise

        hold = self._c.holds.acquire(calendar_id, s.start_time, s.end_time, owner)
        if hold is None:
            self._back_to_time()
            raise SlotUnavailable("Someone else is booking this slot right now.")

        try:
            try:
                receipt = await self._c.payments.check_and_debit(
                    s.user_id, price.token, price.amount
                )
            except BaseException:
                # Nothing was debited; the member may confirm again.
                s.step = BookingStep.CONFIRMING
                raise

            draft = ReservationDraft(
                summary=s.name,
                start=s.start_time,
                end=s.end_time,
                description=build_description(
                    owner_id=s.user_id,
                    amount_display=price.display,
                    payment_ref=receipt.tx_ref,
                    network=price.token.network,
                    booked_at=self._clock(),
                ),
                time_zone=self._tz.key,
            )
            record = OwnershipRecord(
                reservation_id="",
                owner_id=s.user_id,
                community_id=s.community_id,
                room_slug=self._resource.slug,
                token=price.token.symbol,
                price_amount=price.amount,
                payment_ref=receipt.tx_ref,
            )
            try:
                reservation = await self._c.committer.commit(calendar_id, draft, record)
            except CommitFailed as exc:
                exc.refund_ref = await self._c.compensations.compensate(
                    s.user_id, price.token, price.amount, receipt.tx_ref, str(exc)
                )
                self._outcome = "failed"
                raise
            except Exception as exc:
                log.exception(
                    "Unexpected error writing reservation after payment %s", receipt.tx_ref
                )
                failure = CommitFailed(
                    str(exc), payment_ref=receipt.tx_ref, amount=price.amount
                )
                failure.refund_ref = await self._c.compensations.compensate(
                    s.user_id, price.token, price.amount, receipt.tx_ref, str(exc)
                )
                self._outcome = "failed"
                raise failure from exc
        finally:
            self._c.holds.release(hold)

        self._outcome = "completed"
        log.info(
            "Booking completed for %s: %s on %s (%s)",
            self._key_for_log(), self._resource.slug, s.start_time, price.display,
        )
        return Prompt(
            step="completed",
            message=(
                f"✅ Booking confirmed!\n"
                f"**{s.name}** in {self._resource.name}\n"
                f"{format_date(s.start_time)}, {format_time(s.start_time)} - "
                f"{format_time(s.end_time)}\n"
                f"Paid {price.display} (tx {receipt.tx_ref})"
            ),
            details={
                "reservation_id": reservation.id,
                "payment_ref": receipt.tx_ref,
                "amount": price.amount,
                "token": price.token.symbol,
            },
            done=True,
        )

    async def _check_free(self, start: datetime, end: datetime) -> None:
        try:
            conflict = await self._c.availability.check(self._resource.calendar_id, start, end)
        except CalendarError as exc:
            log.warning("Availability check failed for %s: %s", self._resource.slug, exc)
            raise BookingError("Could not check availability. Please try again.") from exc
        if conflict is not None:
            raise SlotUnavailable(
                f"There's already an event at this time: {conflict.summary or 'Booked'} "
                f"({format_time(conflict.start.astimezone(self._tz))} - "
                f"{format_time(conflict.end.astimezone(self._tz))}).",
                conflicting=conflict,
            )

    def _back_to_time(self) -> None:
        self._state.clear_from(BookingStep.SELECTING_TIME)
        self._state.step = BookingStep.SELECTING_TIME

    # ── Helpers ────────────────────────────────────────────────

    def _ensure_live(self) -> None:
        if self.is_done:
            raise SessionExpired("Session already finished")

    def _expect(self, step: BookingStep) -> None:
        self._ensure_live()
        if self._state.step is not step:
            raise InvalidStep(
                f"Expected input for {self._state.step.value}, not {step.value}"
            )

    async def _advance(self, step: BookingStep) -> Prompt:
        self._state.step = step
        return await self._prompt_for(step)

    def _key_for_log(self) -> str:
        return f"{self._state.community_id}:{redact(self._state.user_id)}"

    async def _prompt_for(self, step: BookingStep) -> Prompt:
        s = self._state
        now = self._clock()
        if step is BookingStep.SELECTING_DATE:
            return Prompt(
                step=step.value,
                message=f"📅 Booking **{self._resource.name}**. Which day?",
                options=slots.date_options(self._tz, now=now),
            )
        if step is BookingStep.SELECTING_TIME:
            summary = await self._c.availability.summarize(
                self._resource, s.selected_date, self._tz
            )
            times = slots.start_times(s.selected_date, self._tz, now=now)
            return Prompt(
                step=step.value,
                message=f"{summary}\n\nWhat time would you like to start?",
                options=[
                    slots.Option(format_time(datetime.combine(s.selected_date, t)), f"{t:%H:%M}")
                    for t in times
                ],
            )
        if step is BookingStep.SELECTING_DURATION:
            options = [
                o for o in slots.duration_options()
                if slots.is_valid_start(
                    s.selected_date, s.selected_hour, s.selected_minute,
                    self._tz, duration=int(o.value), now=now,
                )
            ]
            return Prompt(step=step.value, message="How long do you need the room?", options=options)
        if step is BookingStep.NAMING_EVENT:
            return Prompt(
                step=step.value,
                message=f"What's the name of your event? (default: {s.default_name or 'Room Booking'})",
            )
        if step is BookingStep.CONFIRMING:
            return await self._confirmation()
        raise InvalidStep(f"No prompt for {step.value}")

    async def _confirmation(self) -> Prompt:
        s = self._state
        symbol = s.token or self._pricing.default_token(self._resource)
        lines = [
            f"**{s.name}** in {self._resource.name}",
            f"{format_date(s.start_time)}, {format_time(s.start_time)} - "
            f"{format_time(s.end_time)} ({format_duration(s.duration)})",
        ]
        details: dict[str, Any] = {}
        options = [
            slots.Option(p.display, p.token.symbol)
            for p in self._pricing.quote(self._resource, s.duration)
        ]

        if symbol is not None:
            price = self._pricing.price(self._resource, symbol, s.duration)
            details.update(token=symbol, amount=price.amount)
            lines.append(f"Price: {price.display}")
            try:
                balance = await self._c.payments.balance(s.user_id, price.token)
            except PaymentSubmissionFailed as exc:
                lines.append(f"⚠️ Could not read your balance: {exc.reason}")
            else:
                details["balance"] = balance
                lines.append(
                    f"Your balance: {format_amount(balance, price.token.decimals)} {symbol}"
                )
                if balance < price.amount:
                    lines.append("⚠️ Insufficient balance.")
                    if price.token.mint_instructions:
                        lines.append(price.token.mint_instructions)

        return Prompt(
            step=BookingStep.CONFIRMING.value,
            message="\n".join(lines),
            options=options,
            details=details,
        )


# ── Session store ─────────────────────────────────────────────

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class SessionStore(Generic[K, V]):
    """In-memory store with per-entry TTL and a size bound.

    Entries expire ``ttl_seconds`` after their last access.  When full, the
    least recently used entry is evicted.
    """

    def __init__(
        self,
        ttl_seconds: float | None = None,
        max_size: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds if ttl_seconds is not None else settings.session_ttl_seconds
        self._max_size = max_size if max_size is not None else settings.max_sessions
        self._clock = clock
        self._entries: OrderedDict[K, tuple[float, V]] = OrderedDict()

    def get(self, key: K) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        touched, value = entry
        if self._clock() - touched > self._ttl:
            del self._entries[key]
            log.debug("Session %s expired", key)
            return None
        self._entries[key] = (self._clock(), value)
        self._entries.move_to_end(key)
        return value

    def put(self, key: K, value: V) -> None:
        self._entries.pop(key, None)
        self.purge_expired()
        while len(self._entries) >= self._max_size:
            self._entries.popitem(last=False)
            log.warning("Session store full, evicted oldest entry")
        self._entries[key] = (self._clock(), value)

    def pop(self, key: K) -> V | None:
        entry = self._entries.pop(key, None)
        return entry[1] if entry else None

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (t, _) in self._entries.items() if now - t > self._ttl]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        return len(self._entries)
