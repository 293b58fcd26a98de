"""Display helpers shared by the booking and cancellation messages.

These only shape text.  Authoritative amounts stay integers in the token's
smallest unit; ``format_amount`` rounds to two decimals for display.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal


def format_duration(minutes: int) -> str:
    """30 -> '30 minutes', 60 -> '1h', 90 -> '1h30'."""
    if minutes < 60:
        return f"{minutes} minutes"
    hours, rest = divmod(minutes, 60)
    if rest == 0:
        return f"{hours}h"
    return f"{hours}h{rest}"


def _ordinal(day: int) -> str:
    if day in (1, 21, 31):
        return f"{day}st"
    if day in (2, 22):
        return f"{day}nd"
    if day in (3, 23):
        return f"{day}rd"
    return f"{day}th"


def format_date(value: date | datetime) -> str:
    """'Tuesday March 3rd'."""
    return f"{value:%A} {value:%B} {_ordinal(value.day)}"


def format_time(value: datetime) -> str:
    """'2:30pm'."""
    hour = value.hour % 12 or 12
    ampm = "pm" if value.hour >= 12 else "am"
    return f"{hour}:{value.minute:02d}{ampm}"


def format_hour(hour: int) -> str:
    """Button label for an hour: 8 -> '8am', 13 -> '1pm'."""
    hour12 = hour % 12 or 12
    return f"{hour12}{'pm' if hour >= 12 else 'am'}"


def format_amount(units: int, decimals: int) -> str:
    """Render an integer amount in smallest units with two decimals."""
    value = Decimal(units).scaleb(-decimals)
    return str(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def redact(value: str) -> str:
    """Mask identifiers for logging; show first 3 and last 2 chars only."""
    if not value or len(value) <= 5:
        return "***"
    return value[:3] + "***" + value[-2:]
