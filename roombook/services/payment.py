"""Payment settlement against a member's settlement address.

``check_and_debit`` compares the live balance with the exact required amount
and only then submits an irreversible debit.  The balance check and the later
reservation commit are not one atomic operation: the booking session narrows
that gap with a hold and a second conflict check, it does not close it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from roombook.errors import InsufficientBalance, PaymentSubmissionFailed
from roombook.formatting import format_amount, redact
from roombook.ledger.base import LedgerError, LedgerProvider
from roombook.models.catalog import TokenConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DebitReceipt:
    tx_ref: str
    address: str
    amount: int


class PaymentSettlement:
    """Balance checks, debits and credits for one ledger."""

    def __init__(self, ledger: LedgerProvider) -> None:
        self._ledger = ledger
        self._address_cache: dict[tuple[str, str], str] = {}

    async def resolve_address(self, user_id: str, token: TokenConfig) -> str:
        """Settlement address of ``user_id`` for ``token`` (cached)."""
        key = (user_id, token.symbol)
        if key in self._address_cache:
            return self._address_cache[key]
        try:
            address = await self._ledger.resolve_settlement_address(user_id, token.symbol)
        except LedgerError as exc:
            raise PaymentSubmissionFailed(f"Could not resolve your account: {exc}") from exc
        if not address:
            raise PaymentSubmissionFailed("No account is linked to your identity.")
        self._address_cache[key] = address
        return address

    async def balance(self, user_id: str, token: TokenConfig) -> int:
        address = await self.resolve_address(user_id, token)
        try:
            return await self._ledger.get_balance(token.network, token.address, address)
        except LedgerError as exc:
            raise PaymentSubmissionFailed(f"Could not read your balance: {exc}") from exc

    async def check_and_debit(
        self, user_id: str, token: TokenConfig, amount: int
    ) -> DebitReceipt:
        """Debit exactly ``amount`` if the balance covers it.

        Raises:
            InsufficientBalance: Balance below ``amount``; the ledger is
                not touched.
            PaymentSubmissionFailed: Address lookup, balance read or debit
                failed; no funds moved.
        """
        address = await self.resolve_address(user_id, token)
        available = await self.balance(user_id, token)

        if available < amount:
            logger.info(
                "Insufficient balance for %s: required %s, available %s %s",
                redact(user_id),
                format_amount(amount, token.decimals),
                format_amount(available, token.decimals),
                token.symbol,
            )
            raise InsufficientBalance(
                required=amount,
                available=available,
                symbol=token.symbol,
                decimals=token.decimals,
                instructions=token.mint_instructions,
            )

        try:
            tx_ref = await self._ledger.debit(token.network, token.address, address, amount)
        except LedgerError as exc:
            logger.warning("Debit of %d %s failed: %s", amount, token.symbol, exc)
            raise PaymentSubmissionFailed(str(exc)) from exc
        if not tx_ref:
            raise PaymentSubmissionFailed("Transaction returned no hash.")

        logger.info(
            "Debited %s %s from %s (tx %s)",
            format_amount(amount, token.decimals), token.symbol, redact(user_id), tx_ref,
        )
        return DebitReceipt(tx_ref=tx_ref, address=address, amount=amount)

    async def credit(self, user_id: str, token: TokenConfig, amount: int) -> str:
        """Credit ``amount`` back to the member. Raises ``LedgerError``."""
        address = self._address_cache.get((user_id, token.symbol))
        if address is None:
            address = await self._ledger.resolve_settlement_address(user_id, token.symbol)
            if not address:
                raise LedgerError(f"No settlement address for user {redact(user_id)}")
            self._address_cache[(user_id, token.symbol)] = address
        tx_ref = await self._ledger.credit(token.network, token.address, address, amount)
        if not tx_ref:
            raise LedgerError("Transaction returned no hash.")
        logger.info(
            "Credited %s %s to %s (tx %s)",
            format_amount(amount, token.decimals), token.symbol, redact(user_id), tx_ref,
        )
        return tx_ref
