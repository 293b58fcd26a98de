"""Application configuration via environment variables."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings

log = logging.getLogger("roombook.config")


class Settings(BaseSettings):
    # Google Calendar
    google_service_account_json: str = ""
    calendar_timezone: str = "Europe/Brussels"

    # Community / room catalog
    catalog_path: str = "data/communities.json"

    # Opening hours and booking grid
    opening_hour: int = 8
    closing_hour: int = 22
    slot_minutes: int = 30
    date_options_days: int = 7
    extended_date_days: int = 21
    duration_options: list[int] = [30, 60, 90, 120, 180, 240, 300]

    # In-flight conversations
    session_ttl_seconds: int = 900
    max_sessions: int = 10_000

    # Cancellation / refunds
    cancellation_window_days: int = 365
    full_refund_notice_hours: int = 24
    late_refund_percent: int = 50
    refund_basis: str = "current_rate"  # "current_rate" or "booked_price"

    # Ledger
    celo_rpc_url: str = "https://forno.celo.org"
    gnosis_rpc_url: str = "https://rpc.gnosischain.com"
    base_rpc_url: str = "https://mainnet.base.org"
    base_sepolia_rpc_url: str = "https://sepolia.base.org"
    polygon_rpc_url: str = "https://polygon-rpc.com"
    ledger_private_key: str = ""
    card_manager_address: str = "0xBA861e2DABd8316cf11Ae7CdA101d110CF581f28"
    card_manager_instance_id: str = "cw-discord-1"
    card_manager_network: str = "celo"
    ledger_max_retries: int = 3
    ledger_receipt_timeout: int = 120

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def rpc_url(self, network: str) -> str:
        """Return the RPC endpoint configured for a ledger network."""
        url = getattr(self, f"{network}_rpc_url", "")
        if not url:
            raise ValueError(f"No RPC URL configured for network {network!r}")
        return url

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []
        _placeholders = {"0x...", "path/to/service-account.json"}

        if not 0 <= self.opening_hour < self.closing_hour <= 24:
            raise ValueError(
                f"Opening hours are invalid: {self.opening_hour}-{self.closing_hour}"
            )
        if self.slot_minutes <= 0 or 60 % self.slot_minutes:
            raise ValueError(f"SLOT_MINUTES must divide an hour, got {self.slot_minutes}")
        if not 0 <= self.late_refund_percent <= 100:
            raise ValueError(
                f"LATE_REFUND_PERCENT must be between 0 and 100, got {self.late_refund_percent}"
            )
        if self.refund_basis not in {"current_rate", "booked_price"}:
            raise ValueError(
                f"REFUND_BASIS must be 'current_rate' or 'booked_price', got {self.refund_basis!r}"
            )

        # Ledger signer: without it every debit and credit fails
        if not self.ledger_private_key or self.ledger_private_key in _placeholders:
            warnings.append(
                "LEDGER_PRIVATE_KEY not set. Payments and refunds will fail."
            )

        # Google Calendar: warn if placeholder
        if (
            not self.google_service_account_json
            or self.google_service_account_json in _placeholders
        ):
            warnings.append(
                "GOOGLE_SERVICE_ACCOUNT_JSON is not set. Calendar integration disabled."
            )

        return warnings


settings = Settings()
