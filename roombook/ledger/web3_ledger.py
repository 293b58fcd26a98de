"""EVM ledger provider using web3.py.

Members' settlement addresses come from the Citizen Wallet card manager
contract, keyed by ``keccak(user_id)``.  Community tokens are ERC-20
contracts exposing ``mint`` and ``burnFrom`` to the configured minter key.

web3's HTTP provider is synchronous, so every call runs in the default thread
pool, the same way the Google provider wraps its client.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any

from eth_account import Account
from web3 import Web3

from roombook.config import Settings, settings as default_settings
from roombook.formatting import redact

from .base import LedgerError, LedgerProvider

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

CARD_MANAGER_ABI = [
    {
        "type": "function",
        "name": "getCardAddress",
        "inputs": [
            {"name": "id", "type": "bytes32"},
            {"name": "hashedSerial", "type": "bytes32"},
        ],
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
    },
]

TOKEN_ABI = [
    {
        "type": "function",
        "name": "balanceOf",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "mint",
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "burnFrom",
        "inputs": [
            {"name": "account", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
]


class Web3LedgerProvider(LedgerProvider):
    """LedgerProvider backed by ERC-20 contracts on EVM chains."""

    def __init__(self, config: Settings | None = None) -> None:
        self._config = config or default_settings
        if not self._config.ledger_private_key:
            raise ValueError("LEDGER_PRIVATE_KEY must be set to submit transactions.")
        self._account = Account.from_key(self._config.ledger_private_key)
        self._clients: dict[str, Web3] = {}

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run_in_executor(self, func, *args, **kwargs) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    def _client(self, network: str) -> Web3:
        if network not in self._clients:
            self._clients[network] = Web3(
                Web3.HTTPProvider(self._config.rpc_url(network))
            )
        return self._clients[network]

    def _token(self, network: str, token_address: str):
        w3 = self._client(network)
        return w3.eth.contract(
            address=Web3.to_checksum_address(token_address), abi=TOKEN_ABI
        )

    def _send(self, w3: Web3, network: str, build_call):
        """Build, sign and broadcast a contract call, retrying with a fresh nonce.

        Only failures before the node accepts the transaction are retried.
        """
        last_error: Exception | None = None

        for attempt in range(1, self._config.ledger_max_retries + 1):
            try:
                nonce = w3.eth.get_transaction_count(self._account.address, "pending")
                tx = build_call().build_transaction(
                    {
                        "from": self._account.address,
                        "nonce": nonce,
                        "chainId": w3.eth.chain_id,
                    }
                )
                signed = self._account.sign_transaction(tx)
                return w3.eth.send_raw_transaction(signed.raw_transaction)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Transaction attempt %d/%d on %s failed: %s",
                    attempt, self._config.ledger_max_retries, network, exc,
                )

        raise LedgerError(
            f"Transaction failed after {self._config.ledger_max_retries} attempts: {last_error}"
        )

    def _wait(self, w3: Web3, network: str, tx_hash) -> dict:
        """Poll for the receipt of one broadcast transaction.

        The transaction is never rebroadcast with a new nonce.
        """
        last_error: Exception | None = None

        for attempt in range(1, self._config.ledger_max_retries + 1):
            try:
                return w3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=self._config.ledger_receipt_timeout
                )
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Waiting for %s on %s (%d/%d): %s",
                    Web3.to_hex(tx_hash), network,
                    attempt, self._config.ledger_max_retries, exc,
                )

        raise LedgerError(
            f"No receipt for transaction {Web3.to_hex(tx_hash)}: {last_error}",
            tx_ref=Web3.to_hex(tx_hash),
        )

    def _submit(self, network: str, build_call) -> str:
        """Send a contract call and return its hash once the receipt shows success."""
        w3 = self._client(network)
        tx_hash = self._send(w3, network, build_call)
        receipt = self._wait(w3, network, tx_hash)
        if receipt["status"] != 1:
            raise LedgerError(
                f"Transaction {Web3.to_hex(tx_hash)} reverted",
                tx_ref=Web3.to_hex(tx_hash),
            )
        return Web3.to_hex(tx_hash)

    # ------------------------------------------------------------------
    # LedgerProvider interface
    # ------------------------------------------------------------------

    async def resolve_settlement_address(self, user_id: str, token: str) -> str | None:
        """Look up the member's card address (the same for every token)."""
        try:
            w3 = self._client(self._config.card_manager_network)
            contract = w3.eth.contract(
                address=Web3.to_checksum_address(self._config.card_manager_address),
                abi=CARD_MANAGER_ABI,
            )
            instance_id = Web3.keccak(text=self._config.card_manager_instance_id)
            serial = Web3.keccak(text=user_id)
            address = await self._run_in_executor(
                contract.functions.getCardAddress(instance_id, serial).call
            )
        except Exception as exc:
            raise LedgerError(f"Failed to resolve address: {exc}") from exc

        if not address or address == ZERO_ADDRESS:
            logger.info("No card address for user %s", redact(user_id))
            return None
        return address

    async def get_balance(self, network: str, token_address: str, address: str) -> int:
        try:
            contract = self._token(network, token_address)
            return int(
                await self._run_in_executor(
                    contract.functions.balanceOf(Web3.to_checksum_address(address)).call
                )
            )
        except Exception as exc:
            raise LedgerError(f"Failed to read balance: {exc}") from exc

    async def debit(
        self, network: str, token_address: str, address: str, amount: int
    ) -> str:
        try:
            contract = self._token(network, token_address)
            account = Web3.to_checksum_address(address)
        except Exception as exc:
            raise LedgerError(f"Cannot prepare burn on {network}: {exc}") from exc
        tx_ref = await self._run_in_executor(
            self._submit, network, lambda: contract.functions.burnFrom(account, amount)
        )
        logger.info("Burned %d from %s on %s: %s", amount, account, network, tx_ref)
        return tx_ref

    async def credit(
        self, network: str, token_address: str, address: str, amount: int
    ) -> str:
        try:
            contract = self._token(network, token_address)
            account = Web3.to_checksum_address(address)
        except Exception as exc:
            raise LedgerError(f"Cannot prepare mint on {network}: {exc}") from exc
        tx_ref = await self._run_in_executor(
            self._submit, network, lambda: contract.functions.mint(account, amount)
        )
        logger.info("Minted %d to %s on %s: %s", amount, account, network, tx_ref)
        return tx_ref
