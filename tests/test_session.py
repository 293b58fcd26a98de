"""Tests for the booking conversation: step order, back navigation and processing."""

import asyncio
from datetime import date, datetime, timedelta

import pytest

from roombook.calendar_providers.base import (
    CalendarConflictError,
    CalendarError,
    Reservation,
)
from roombook.errors import (
    BookingError,
    CommitConflict,
    CommitFailed,
    InsufficientBalance,
    InvalidStep,
    PaymentSubmissionFailed,
    ResourceNotBookable,
    ResourceNotFound,
    SessionExpired,
    SlotUnavailable,
)
from roombook.ledger.base import LedgerError
from roombook.models.booking import BookingState
from roombook.services.reservation import owner_from_description
from roombook.session import SessionStore
from roombook.workflows.room_booking import STEP_ORDER, BookingStep, fields_from

from conftest import ADDRESS, COMMUNITY_ID, TZ, USER_ID

TUESDAY = date(2026, 3, 3)
START = datetime(2026, 3, 3, 10, 0, tzinfo=TZ)


async def reach_confirming(service, minutes=90, name="Team sync"):
    await service.start_booking(COMMUNITY_ID, USER_ID, "ostrom", display_name="Ada")
    await service.choose_date(COMMUNITY_ID, USER_ID, TUESDAY)
    await service.choose_time(COMMUNITY_ID, USER_ID, 10, 0)
    await service.choose_duration(COMMUNITY_ID, USER_ID, minutes)
    return await service.choose_name(COMMUNITY_ID, USER_ID, name)


class TestWorkflow:
    def test_step_order(self):
        assert STEP_ORDER[0] is BookingStep.SELECTING_DATE
        assert STEP_ORDER[-1] is BookingStep.PROCESSING
        assert STEP_ORDER.index(BookingStep.NAMING_EVENT) < STEP_ORDER.index(BookingStep.CONFIRMING)

    def test_fields_from_time(self):
        fields = fields_from(BookingStep.SELECTING_TIME)
        assert "selected_date" not in fields
        assert {"selected_hour", "duration", "name", "token"} <= set(fields)

    def test_clear_from_keeps_earlier_fields(self):
        state = BookingState(community_id="c", user_id="u", resource_id="r")
        state.selected_date = TUESDAY
        state.selected_hour = 10
        state.duration = 60
        state.name = "x"
        state.clear_from(BookingStep.SELECTING_DURATION)
        assert state.selected_date == TUESDAY
        assert state.selected_hour == 10
        assert state.duration is None
        assert state.name is None


class TestStartBooking:
    @pytest.mark.asyncio
    async def test_first_prompt_offers_dates(self, service):
        prompt = await service.start_booking(COMMUNITY_ID, USER_ID, "ostrom")
        assert prompt.step == "selecting_date"
        assert prompt.options[0].label == "Today"

    @pytest.mark.asyncio
    async def test_unknown_room(self, service):
        with pytest.raises(ResourceNotFound):
            await service.start_booking(COMMUNITY_ID, USER_ID, "nope")

    @pytest.mark.asyncio
    async def test_room_without_calendar(self, service):
        with pytest.raises(ResourceNotBookable):
            await service.start_booking(COMMUNITY_ID, USER_ID, "mushroom")

    @pytest.mark.asyncio
    async def test_continuation_without_session(self, service):
        with pytest.raises(SessionExpired):
            await service.choose_date(COMMUNITY_ID, USER_ID, TUESDAY)


class TestStepInputs:
    @pytest.mark.asyncio
    async def test_time_prompt_shows_availability(self, service, calendar):
        calendar.add("cal-ostrom", START, START + timedelta(hours=1), summary="Yoga")
        await service.start_booking(COMMUNITY_ID, USER_ID, "ostrom")
        prompt = await service.choose_date(COMMUNITY_ID, USER_ID, TUESDAY)
        assert prompt.step == "selecting_time"
        assert "Yoga" in prompt.message
        assert prompt.options[0].value == "08:00"

    @pytest.mark.asyncio
    async def test_input_for_wrong_step(self, service):
        await service.start_booking(COMMUNITY_ID, USER_ID, "ostrom")
        with pytest.raises(InvalidStep):
            await service.choose_time(COMMUNITY_ID, USER_ID, 10, 0)

    @pytest.mark.asyncio
    async def test_closing_time_rejected(self, service):
        await service.start_booking(COMMUNITY_ID, USER_ID, "ostrom")
        await service.choose_date(COMMUNITY_ID, USER_ID, TUESDAY)
        with pytest.raises(BookingError):
            await service.choose_time(COMMUNITY_ID, USER_ID, 22, 0)
        assert service.session(COMMUNITY_ID, USER_ID).current_step is BookingStep.SELECTING_TIME

    @pytest.mark.asyncio
    async def test_duration_past_closing_rejected(self, service):
        await service.start_booking(COMMUNITY_ID, USER_ID, "ostrom")
        await service.choose_date(COMMUNITY_ID, USER_ID, TUESDAY)
        prompt = await service.choose_time(COMMUNITY_ID, USER_ID, 21, 0)
        assert [o.value for o in prompt.options] == ["30", "60"]
        with pytest.raises(BookingError):
            await service.choose_duration(COMMUNITY_ID, USER_ID, 90)

    @pytest.mark.asyncio
    async def test_default_name(self, service):
        prompt = await reach_confirming(service, name=None)
        assert service.session(COMMUNITY_ID, USER_ID).state.name == "Booked by Ada"
        assert prompt.step == "confirming"

    @pytest.mark.asyncio
    async def test_confirmation_shows_price_and_balance(self, service):
        prompt = await reach_confirming(service)
        assert prompt.details["amount"] == 1500
        assert prompt.details["balance"] == 2000
        assert "15.00 TOK" in prompt.message
        assert "20.00 TOK" in prompt.message

    @pytest.mark.asyncio
    async def test_confirmation_warns_on_low_balance(self, service, ledger):
        ledger.balances[ADDRESS] = 100
        prompt = await reach_confirming(service)
        assert "Insufficient balance" in prompt.message
        assert "Ask a steward" in prompt.message

    @pytest.mark.asyncio
    async def test_choose_unpriced_token(self, service):
        await reach_confirming(service)
        with pytest.raises(BookingError):
            await service.choose_token(COMMUNITY_ID, USER_ID, "EUR")


class TestGoBack:
    @pytest.mark.asyncio
    async def test_back_to_time_clears_later_fields(self, service):
        await reach_confirming(service)
        prompt = await service.go_back(COMMUNITY_ID, USER_ID, BookingStep.SELECTING_TIME)
        state = service.session(COMMUNITY_ID, USER_ID).state
        assert prompt.step == "selecting_time"
        assert state.step is BookingStep.SELECTING_TIME
        assert state.selected_date == TUESDAY
        assert state.selected_hour is None
        assert state.duration is None
        assert state.start_time is None
        assert state.name is None

    @pytest.mark.asyncio
    async def test_back_from_duration_keeps_date(self, service):
        await service.start_booking(COMMUNITY_ID, USER_ID, "ostrom")
        await service.choose_date(COMMUNITY_ID, USER_ID, TUESDAY)
        await service.choose_time(COMMUNITY_ID, USER_ID, 10, 0)
        await service.go_back(COMMUNITY_ID, USER_ID, BookingStep.SELECTING_TIME)
        state = service.session(COMMUNITY_ID, USER_ID).state
        assert state.selected_date == TUESDAY
        assert state.duration is None
        assert state.name is None

    @pytest.mark.asyncio
    async def test_cannot_go_forward_or_stay(self, service):
        await service.start_booking(COMMUNITY_ID, USER_ID, "ostrom")
        await service.choose_date(COMMUNITY_ID, USER_ID, TUESDAY)
        with pytest.raises(InvalidStep):
            await service.go_back(COMMUNITY_ID, USER_ID, BookingStep.SELECTING_TIME)
        with pytest.raises(InvalidStep):
            await service.go_back(COMMUNITY_ID, USER_ID, BookingStep.CONFIRMING)

    @pytest.mark.asyncio
    async def test_replay_after_back(self, service):
        await reach_confirming(service)
        await service.go_back(COMMUNITY_ID, USER_ID, BookingStep.SELECTING_DURATION)
        await service.choose_duration(COMMUNITY_ID, USER_ID, 60)
        prompt = await service.choose_name(COMMUNITY_ID, USER_ID, "Shorter")
        assert prompt.details["amount"] == 1000


class TestConfirm:
    @pytest.mark.asyncio
    async def test_successful_booking(self, service, calendar, ledger):
        await reach_confirming(service)
        prompt = await service.confirm(COMMUNITY_ID, USER_ID)

        assert prompt.done
        assert ledger.debits == [(ADDRESS, 1500)]
        [reservation] = calendar.reservations["cal-ostrom"]
        assert reservation.summary == "Team sync"
        assert reservation.start == START
        assert reservation.end == START + timedelta(minutes=90)
        assert owner_from_description(reservation.description) == USER_ID
        assert prompt.details["reservation_id"] == reservation.id
        assert service.index.get(reservation.id).payment_ref == prompt.details["payment_ref"]
        assert len(service.holds) == 0
        with pytest.raises(SessionExpired):
            service.session(COMMUNITY_ID, USER_ID)

    @pytest.mark.asyncio
    async def test_insufficient_balance_returns_to_confirming(self, service, calendar, ledger):
        ledger.balances[ADDRESS] = 300
        await reach_confirming(service, minutes=30)
        with pytest.raises(InsufficientBalance) as excinfo:
            await service.confirm(COMMUNITY_ID, USER_ID)
        assert excinfo.value.required == 500
        assert excinfo.value.available == 300
        assert ledger.debits == []
        assert calendar.reservations.get("cal-ostrom", []) == []
        assert service.session(COMMUNITY_ID, USER_ID).current_step is BookingStep.CONFIRMING
        assert len(service.holds) == 0

    @pytest.mark.asyncio
    async def test_payment_failure_returns_to_confirming(self, service, ledger):
        ledger.debit_error = LedgerError("gas estimation failed")
        await reach_confirming(service)
        with pytest.raises(PaymentSubmissionFailed):
            await service.confirm(COMMUNITY_ID, USER_ID)
        assert service.session(COMMUNITY_ID, USER_ID).current_step is BookingStep.CONFIRMING

    @pytest.mark.asyncio
    async def test_slot_taken_before_payment(self, service, calendar, ledger):
        await reach_confirming(service)
        calendar.add("cal-ostrom", START + timedelta(minutes=30), START + timedelta(minutes=90))
        with pytest.raises(SlotUnavailable):
            await service.confirm(COMMUNITY_ID, USER_ID)
        state = service.session(COMMUNITY_ID, USER_ID).state
        assert state.step is BookingStep.SELECTING_TIME
        assert state.selected_date == TUESDAY
        assert state.selected_hour is None
        assert ledger.debits == []

    @pytest.mark.asyncio
    async def test_slot_held_by_someone_else(self, service, ledger):
        await reach_confirming(service)
        service.holds.acquire("cal-ostrom", START, START + timedelta(hours=1), owner="other")
        with pytest.raises(SlotUnavailable):
            await service.confirm(COMMUNITY_ID, USER_ID)
        assert ledger.debits == []

    @pytest.mark.asyncio
    async def test_conflict_at_duration_step(self, service, calendar):
        calendar.add("cal-ostrom", START + timedelta(hours=1), START + timedelta(hours=2))
        await service.start_booking(COMMUNITY_ID, USER_ID, "ostrom")
        await service.choose_date(COMMUNITY_ID, USER_ID, TUESDAY)
        await service.choose_time(COMMUNITY_ID, USER_ID, 10, 0)
        with pytest.raises(SlotUnavailable):
            await service.choose_duration(COMMUNITY_ID, USER_ID, 90)
        assert service.session(COMMUNITY_ID, USER_ID).current_step is BookingStep.SELECTING_TIME

    @pytest.mark.asyncio
    async def test_commit_failure_is_compensated(self, service, calendar, ledger):
        await reach_confirming(service)
        calendar.create_error = CalendarError("backend unavailable")
        with pytest.raises(CommitFailed) as excinfo:
            await service.confirm(COMMUNITY_ID, USER_ID)

        assert excinfo.value.refund_ref is not None
        assert "refunded" in excinfo.value.user_message()
        assert ledger.debits == [(ADDRESS, 1500)]
        assert ledger.credits == [(ADDRESS, 1500)]
        assert ledger.balances[ADDRESS] == 2000
        assert len(service.holds) == 0
        with pytest.raises(SessionExpired):
            service.session(COMMUNITY_ID, USER_ID)

    @pytest.mark.asyncio
    async def test_write_time_conflict_is_compensated(self, service, calendar, ledger):
        await reach_confirming(service)
        other = Reservation(id="evt_r", summary="Race", start=START, end=START + timedelta(hours=1))
        calendar.create_error = CalendarConflictError(other)
        with pytest.raises(CommitConflict) as excinfo:
            await service.confirm(COMMUNITY_ID, USER_ID)
        assert excinfo.value.conflicting is other
        assert ledger.credits == [(ADDRESS, 1500)]

    @pytest.mark.asyncio
    async def test_failed_compensation_is_queued_for_retry(self, service, calendar, ledger):
        await reach_confirming(service)
        calendar.create_error = CalendarError("backend unavailable")
        ledger.credit_error = LedgerError("rpc down")
        with pytest.raises(CommitFailed) as excinfo:
            await service.confirm(COMMUNITY_ID, USER_ID)
        assert excinfo.value.refund_ref is None
        assert "contact an operator" in excinfo.value.user_message()
        assert len(service.compensations.pending) == 1

        ledger.credit_error = None
        assert await service.retry_compensations() == 1
        assert service.compensations.pending == []
        assert ledger.credits == [(ADDRESS, 1500)]

    @pytest.mark.asyncio
    async def test_unexpected_compensation_error_is_queued(self, service, calendar, ledger):
        await reach_confirming(service)
        calendar.create_error = CalendarError("backend unavailable")
        ledger.credit_error = ValueError("bad checksum")
        with pytest.raises(CommitFailed) as excinfo:
            await service.confirm(COMMUNITY_ID, USER_ID)
        assert excinfo.value.refund_ref is None
        [pending] = service.compensations.pending
        assert pending.amount == 1500
        assert pending.payment_ref == "0xdebit1"

        ledger.credit_error = None
        assert await service.retry_compensations() == 1
        assert ledger.balances[ADDRESS] == 2000

    @pytest.mark.asyncio
    async def test_unexpected_commit_error_is_compensated(self, service, calendar, ledger):
        await reach_confirming(service)
        calendar.create_error = RuntimeError("client bug")
        with pytest.raises(CommitFailed) as excinfo:
            await service.confirm(COMMUNITY_ID, USER_ID)
        assert excinfo.value.amount == 1500
        assert excinfo.value.refund_ref is not None
        assert ledger.credits == [(ADDRESS, 1500)]
        assert len(service.holds) == 0
        with pytest.raises(SessionExpired):
            service.session(COMMUNITY_ID, USER_ID)

    @pytest.mark.asyncio
    async def test_unexpected_debit_error_returns_to_confirming(self, service, calendar, ledger):
        await reach_confirming(service)
        ledger.debit_error = ValueError("bad checksum")
        with pytest.raises(ValueError):
            await service.confirm(COMMUNITY_ID, USER_ID)
        assert service.session(COMMUNITY_ID, USER_ID).current_step is BookingStep.CONFIRMING
        assert len(service.holds) == 0

        ledger.debit_error = None
        prompt = await service.confirm(COMMUNITY_ID, USER_ID)
        assert prompt.done
        assert ledger.debits == [(ADDRESS, 1500)]

    @pytest.mark.asyncio
    async def test_double_confirm_debits_once(self, service, ledger):
        await reach_confirming(service)
        results = await asyncio.gather(
            service.confirm(COMMUNITY_ID, USER_ID),
            service.confirm(COMMUNITY_ID, USER_ID),
            return_exceptions=True,
        )
        done = [r for r in results if not isinstance(r, Exception)]
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(done) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], SessionExpired)
        assert ledger.debits == [(ADDRESS, 1500)]

    @pytest.mark.asyncio
    async def test_two_users_same_slot(self, service, calendar, ledger):
        other = "555444333"
        ledger.addresses[other] = "0x2222222222222222222222222222222222222222"
        ledger.balances["0x2222222222222222222222222222222222222222"] = 2000
        await reach_confirming(service)
        await service.start_booking(COMMUNITY_ID, other, "ostrom")
        await service.choose_date(COMMUNITY_ID, other, TUESDAY)
        await service.choose_time(COMMUNITY_ID, other, 10, 0)
        await service.choose_duration(COMMUNITY_ID, other, 90)
        await service.choose_name(COMMUNITY_ID, other, "Clash")

        await service.confirm(COMMUNITY_ID, USER_ID)
        with pytest.raises(SlotUnavailable):
            await service.confirm(COMMUNITY_ID, other)
        assert len(calendar.reservations["cal-ostrom"]) == 1
        assert len(ledger.debits) == 1


class TestSessionStore:
    def test_expires_after_ttl(self):
        now = [0.0]
        store = SessionStore(ttl_seconds=900, max_size=10, clock=lambda: now[0])
        store.put(("c", "u"), "session")
        now[0] = 899
        assert store.get(("c", "u")) == "session"
        now[0] = 899 + 901
        assert store.get(("c", "u")) is None
        assert len(store) == 0

    def test_access_refreshes_ttl(self):
        now = [0.0]
        store = SessionStore(ttl_seconds=100, max_size=10, clock=lambda: now[0])
        store.put("k", 1)
        for t in (90, 180, 270):
            now[0] = t
            assert store.get("k") == 1

    def test_evicts_least_recently_used(self):
        store = SessionStore(ttl_seconds=100, max_size=2, clock=lambda: 0.0)
        store.put("a", 1)
        store.put("b", 2)
        store.get("a")
        store.put("c", 3)
        assert store.get("b") is None
        assert store.get("a") == 1
        assert store.get("c") == 3

    def test_purge_expired(self):
        now = [0.0]
        store = SessionStore(ttl_seconds=10, max_size=10, clock=lambda: now[0])
        store.put("a", 1)
        store.put("b", 2)
        now[0] = 11
        assert store.purge_expired() == 2

    @pytest.mark.asyncio
    async def test_expired_session_raises(self, service, clock):
        await service.start_booking(COMMUNITY_ID, USER_ID, "ostrom")
        service._sessions._ttl = 0
        service._sessions._clock = lambda: float("inf")
        with pytest.raises(SessionExpired):
            await service.choose_date(COMMUNITY_ID, USER_ID, TUESDAY)

    @pytest.mark.asyncio
    async def test_abort(self, service):
        await service.start_booking(COMMUNITY_ID, USER_ID, "ostrom")
        assert service.abort_booking(COMMUNITY_ID, USER_ID)
        assert not service.abort_booking(COMMUNITY_ID, USER_ID)
