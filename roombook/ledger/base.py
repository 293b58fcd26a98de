"""Abstract base class for ledger providers.

The ledger holds the community tokens.  A debit burns tokens from a member's
settlement address (payment capture); a credit mints tokens to it (refund).
Both are irreversible.  Implementations own their retry, nonce and fee
handling: each call returns exactly one terminal outcome, a transaction
reference or a ``LedgerError``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class LedgerError(Exception):
    """Raised when a ledger read or transaction fails.

    ``tx_ref`` is set when a transaction was broadcast but its outcome is
    unknown or it reverted, so operators can look it up.
    """

    def __init__(self, message: str, tx_ref: str | None = None) -> None:
        super().__init__(message)
        self.tx_ref = tx_ref


class LedgerProvider(ABC):
    """Abstract token ledger."""

    @abstractmethod
    async def resolve_settlement_address(self, user_id: str, token: str) -> str | None:
        """Return the address holding ``token`` for a platform user, if any.

        Must be idempotent: the same ``(user_id, token)`` always yields the
        same address.
        """

    @abstractmethod
    async def get_balance(self, network: str, token_address: str, address: str) -> int:
        """Return the balance in the token's smallest unit."""

    @abstractmethod
    async def debit(
        self, network: str, token_address: str, address: str, amount: int
    ) -> str:
        """Burn ``amount`` from ``address``. Returns the transaction reference."""

    @abstractmethod
    async def credit(
        self, network: str, token_address: str, address: str, amount: int
    ) -> str:
        """Mint ``amount`` to ``address``. Returns the transaction reference."""
