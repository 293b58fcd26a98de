"""Booking error hierarchy.

Every error a user action can end in derives from ``BookingError``.  The
presentation layer catches them at the boundary of each action and shows
``user_message()``; nothing here is meant to crash the process.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from roombook.calendar_providers.base import Reservation


class BookingError(Exception):
    """Base class for errors surfaced to the user."""

    kind = "booking_error"

    def user_message(self) -> str:
        return str(self) or "Something went wrong. Please try again."


class SessionExpired(BookingError):
    """A continuation input arrived with no matching session."""

    kind = "session_expired"

    def user_message(self) -> str:
        return "Session expired. Please start again."


class InvalidStep(BookingError):
    """The input does not belong to the session's current step."""

    kind = "invalid_step"


class ResourceNotFound(BookingError):
    kind = "resource_not_found"


class ResourceNotBookable(BookingError):
    """The room exists but has no calendar binding."""

    kind = "resource_not_bookable"

    def user_message(self) -> str:
        return "This room doesn't have a calendar configured."


class SlotUnavailable(BookingError):
    """The interval is taken (or held) before any money moved."""

    kind = "slot_unavailable"

    def __init__(self, message: str, conflicting: "Reservation | None" = None) -> None:
        super().__init__(message)
        self.conflicting = conflicting


class InsufficientBalance(BookingError):
    """Balance is below the exact required amount. No funds moved."""

    kind = "insufficient_balance"

    def __init__(
        self,
        required: int,
        available: int,
        symbol: str = "",
        decimals: int = 0,
        instructions: str = "",
    ) -> None:
        super().__init__(f"Insufficient balance: required {required}, available {available}")
        self.required = required
        self.available = available
        self.symbol = symbol
        self.decimals = decimals
        self.instructions = instructions

    def user_message(self) -> str:
        from roombook.formatting import format_amount

        msg = (
            f"Insufficient balance. You need {format_amount(self.required, self.decimals)} "
            f"{self.symbol} but only have {format_amount(self.available, self.decimals)} "
            f"{self.symbol}."
        )
        if self.instructions:
            msg += f"\n\n{self.instructions}"
        return msg


class PaymentSubmissionFailed(BookingError):
    """The debit did not go through. No funds moved, no reservation."""

    kind = "payment_failed"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason

    def user_message(self) -> str:
        return f"Payment failed: {self.reason}"


class CommitFailed(BookingError):
    """Payment was captured but the reservation could not be written."""

    kind = "commit_failed"

    def __init__(
        self,
        message: str,
        payment_ref: str = "",
        amount: int = 0,
        refund_ref: str | None = None,
    ) -> None:
        super().__init__(message)
        self.payment_ref = payment_ref
        self.amount = amount
        self.refund_ref = refund_ref

    def user_message(self) -> str:
        if self.refund_ref:
            return (
                "Payment successful but booking failed. "
                f"Your payment has been refunded (tx {self.refund_ref})."
            )
        return (
            "Payment successful but booking failed. "
            "Please contact an operator for a refund."
        )


class CommitConflict(CommitFailed):
    """The second conflict check, or the calendar write, lost the race."""

    kind = "commit_conflict"

    def __init__(
        self,
        conflicting: "Reservation | None",
        payment_ref: str = "",
        amount: int = 0,
        refund_ref: str | None = None,
    ) -> None:
        super().__init__(
            "Reservation conflicts with an existing booking",
            payment_ref=payment_ref,
            amount=amount,
            refund_ref=refund_ref,
        )
        self.conflicting = conflicting

    def user_message(self) -> str:
        base = super().user_message()
        if self.conflicting is None:
            return base
        c = self.conflicting
        return (
            f"{base}\n\nThere's already an event at this time: "
            f"{c.summary or 'Booked'} ({c.start:%H:%M} - {c.end:%H:%M})."
        )


class RefundSubmissionFailed(BookingError):
    """The refund credit failed. The reservation was kept."""

    kind = "refund_failed"

    def __init__(self, reason: str, amount: int = 0) -> None:
        super().__init__(reason)
        self.reason = reason
        self.amount = amount

    def user_message(self) -> str:
        return (
            "Failed to process refund. Your booking was kept; "
            "please try cancelling again or contact an operator."
        )


class CancellationInProgress(BookingError):
    """Another cancellation of the same reservation is mid-flight."""

    kind = "cancellation_in_progress"

    def user_message(self) -> str:
        return "This booking is already being cancelled."
