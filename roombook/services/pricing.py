"""Room pricing.

Rates are whole tokens per hour; payable amounts are integers in the token's
smallest unit.  The conversion is done with ``Decimal`` so the debited amount
never drifts from the exact scaled value.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal

from roombook.formatting import format_amount
from roombook.models.catalog import CommunitySettings, Resource, TokenConfig


def price_units(rate_per_hour: Decimal | int | str, minutes: int, decimals: int) -> int:
    """``rate * minutes / 60`` in smallest units, rounded up to a whole unit."""
    scaled = Decimal(rate_per_hour).scaleb(decimals) * minutes / 60
    return int(scaled.to_integral_value(rounding=ROUND_CEILING))


@dataclass(frozen=True)
class Price:
    """The payable amount of a booking in one accepted token."""

    token: TokenConfig
    amount: int  # smallest units

    @property
    def display(self) -> str:
        return f"{format_amount(self.amount, self.token.decimals)} {self.token.symbol}"


class PriceCalculator:
    """Turn a room's hourly rates into exact payable amounts."""

    def __init__(self, community: CommunitySettings) -> None:
        self._community = community

    def price(self, resource: Resource, token: str, minutes: int) -> Price:
        rate = resource.rate_for(token)
        token_config = self._community.token(token)
        if rate is None or token_config is None:
            raise ValueError(f"{resource.slug!r} is not priced in {token!r}")
        return Price(token_config, price_units(rate, minutes, token_config.decimals))

    def quote(self, resource: Resource, minutes: int) -> list[Price]:
        """Prices in every accepted token, in catalog order."""
        return [self.price(resource, p.token, minutes) for p in resource.prices]

    def default_token(self, resource: Resource) -> str | None:
        """The token a booking settles in unless the member picks another."""
        return resource.prices[0].token if resource.prices else None
