"""Ledger provider abstractions and implementations."""

from .base import LedgerError, LedgerProvider

__all__ = ["LedgerProvider", "LedgerError"]
