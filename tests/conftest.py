"""Shared fixtures: in-memory calendar and ledger, a sample community, a fixed clock."""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from roombook.calendar_providers.base import (
    CalendarConflictError,
    CalendarError,
    CalendarProvider,
    Reservation,
    ReservationDraft,
)
from roombook.conflicts import find_conflict
from roombook.ledger.base import LedgerProvider
from roombook.models.catalog import CommunitySettings, Resource, TokenConfig, TokenPrice
from roombook.service import BookingService

TZ = ZoneInfo("Europe/Brussels")
# Monday
NOW = datetime(2026, 3, 2, 9, 0, tzinfo=TZ)

COMMUNITY_ID = "guild-1"
USER_ID = "100200300"
OTHER_USER_ID = "999888777"
ADDRESS = "0x1111111111111111111111111111111111111111"


class FakeCalendar(CalendarProvider):
    def __init__(self) -> None:
        self.reservations: dict[str, list[Reservation]] = {}
        self.failing_calendars: set[str] = set()
        self.create_error: Exception | None = None
        self.delete_error: Exception | None = None
        self.deleted: list[str] = []
        self._ids = itertools.count(1)

    def add(
        self,
        calendar_id: str,
        start: datetime,
        end: datetime,
        summary: str = "Existing",
        description: str = "",
    ) -> Reservation:
        reservation = Reservation(
            id=f"evt_{next(self._ids)}",
            summary=summary,
            start=start,
            end=end,
            description=description,
        )
        self.reservations.setdefault(calendar_id, []).append(reservation)
        return reservation

    async def list_reservations(self, calendar_id, start, end):
        if calendar_id in self.failing_calendars:
            raise CalendarError(f"Cannot read {calendar_id}")
        found = [
            r for r in self.reservations.get(calendar_id, [])
            if r.start < end and r.end > start
        ]
        return sorted(found, key=lambda r: r.start)

    async def create_reservation(self, calendar_id, draft: ReservationDraft):
        if self.create_error is not None:
            raise self.create_error
        existing = self.reservations.get(calendar_id, [])
        conflicting = find_conflict(draft.start, draft.end, existing)
        if conflicting is not None:
            raise CalendarConflictError(conflicting)
        return self.add(
            calendar_id, draft.start, draft.end, draft.summary, draft.description
        )

    async def delete_reservation(self, calendar_id, reservation_id):
        if self.delete_error is not None:
            raise self.delete_error
        self.reservations[calendar_id] = [
            r for r in self.reservations.get(calendar_id, []) if r.id != reservation_id
        ]
        self.deleted.append(reservation_id)


class FakeLedger(LedgerProvider):
    def __init__(self) -> None:
        self.addresses: dict[str, str] = {}
        self.balances: dict[str, int] = {}
        self.debits: list[tuple[str, int]] = []
        self.credits: list[tuple[str, int]] = []
        self.resolve_calls = 0
        self.debit_error: Exception | None = None
        self.credit_error: Exception | None = None
        self._tx = itertools.count(1)

    async def resolve_settlement_address(self, user_id, token):
        self.resolve_calls += 1
        return self.addresses.get(user_id)

    async def get_balance(self, network, token_address, address):
        return self.balances.get(address, 0)

    async def debit(self, network, token_address, address, amount):
        if self.debit_error is not None:
            raise self.debit_error
        self.balances[address] = self.balances.get(address, 0) - amount
        self.debits.append((address, amount))
        return f"0xdebit{next(self._tx)}"

    async def credit(self, network, token_address, address, amount):
        if self.credit_error is not None:
            raise self.credit_error
        self.balances[address] = self.balances.get(address, 0) + amount
        self.credits.append((address, amount))
        return f"0xcredit{next(self._tx)}"


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def token() -> TokenConfig:
    return TokenConfig(
        symbol="TOK",
        name="Test Token",
        decimals=2,
        network="celo",
        address="0x65dd32834927de9e57e72a3e2130a19f81c6371d",
        mint_instructions="Ask a steward for more TOK.",
    )


@pytest.fixture
def community(token) -> CommunitySettings:
    return CommunitySettings(
        id=COMMUNITY_ID,
        name="Test Hub",
        timezone="Europe/Brussels",
        tokens={"TOK": token},
        rooms=[
            Resource(
                slug="ostrom",
                name="Ostrom Room",
                calendar_id="cal-ostrom",
                channel_id="1180000000000000001",
                prices=[TokenPrice(token="TOK", amount=Decimal("10"))],
            ),
            Resource(
                slug="satoshi",
                name="Satoshi Room",
                calendar_id="cal-satoshi",
                prices=[TokenPrice(token="TOK", amount=Decimal("2.5"))],
            ),
            Resource(
                slug="mushroom",
                name="Mushroom Room",
                prices=[TokenPrice(token="TOK", amount=Decimal("1"))],
            ),
        ],
    )


@pytest.fixture
def calendar() -> FakeCalendar:
    return FakeCalendar()


@pytest.fixture
def ledger() -> FakeLedger:
    ledger = FakeLedger()
    ledger.addresses[USER_ID] = ADDRESS
    ledger.balances[ADDRESS] = 2000  # 20.00 TOK
    return ledger


@pytest.fixture
def clock() -> Clock:
    return Clock(NOW)


@pytest.fixture
def service(calendar, ledger, community, clock) -> BookingService:
    return BookingService(
        calendar=calendar,
        ledger=ledger,
        communities={community.id: community},
        clock=clock,
    )
