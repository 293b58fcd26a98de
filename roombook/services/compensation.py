"""Compensating credits for payments whose reservation could not be written.

A debit is irreversible, so when the commit after it fails the same amount is
credited back.  Credits that fail are kept here until ``retry_pending`` gets
them through; every one of them is logged at ERROR for audit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from roombook.formatting import format_amount, redact
from roombook.ledger.base import LedgerError
from roombook.models.catalog import TokenConfig
from roombook.services.payment import PaymentSettlement

log = logging.getLogger("roombook.compensation")


@dataclass
class PendingCompensation:
    user_id: str
    token: TokenConfig
    amount: int
    payment_ref: str
    reason: str
    attempts: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class CompensationQueue:
    def __init__(self, payments: PaymentSettlement) -> None:
        self._payments = payments
        self._pending: list[PendingCompensation] = []

    @property
    def pending(self) -> list[PendingCompensation]:
        return list(self._pending)

    async def compensate(
        self,
        user_id: str,
        token: TokenConfig,
        amount: int,
        payment_ref: str,
        reason: str,
    ) -> str | None:
        """Credit ``amount`` back. Returns the credit reference, or None if queued."""
        item = PendingCompensation(user_id, token, amount, payment_ref, reason)
        log.error(
            "Commit failed after payment %s (%s %s from %s): %s. Refunding.",
            payment_ref,
            format_amount(amount, token.decimals),
            token.symbol,
            redact(user_id),
            reason,
        )
        return await self._attempt(item)

    async def retry_pending(self) -> int:
        """Retry every queued credit. Returns how many went through."""
        items, self._pending = self._pending, []
        done = 0
        for item in items:
            if await self._attempt(item) is not None:
                done += 1
        return done

    async def _attempt(self, item: PendingCompensation) -> str | None:
        item.attempts += 1
        try:
            ref = await self._payments.credit(item.user_id, item.token, item.amount)
        except LedgerError as exc:
            log.error(
                "Compensating credit for payment %s failed (attempt %d): %s",
                item.payment_ref, item.attempts, exc,
            )
            self._pending.append(item)
            return None
        except Exception:
            log.exception(
                "Compensating credit for payment %s raised unexpectedly (attempt %d)",
                item.payment_ref, item.attempts,
            )
            self._pending.append(item)
            return None
        log.info("Compensated payment %s with credit %s", item.payment_ref, ref)
        return ref
