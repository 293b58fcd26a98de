"""Pydantic models for communities, their tokens and their bookable rooms."""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel


class TokenConfig(BaseModel):
    """A community-issued token accepted for payment."""

    symbol: str
    name: str = ""
    decimals: int = 18
    network: str  # "celo", "gnosis", "base", "base_sepolia", "polygon"
    address: str
    mint_instructions: str = ""


class TokenPrice(BaseModel):
    """Hourly rate of a room in one token, in whole tokens."""

    token: str
    amount: Decimal


class Resource(BaseModel):
    """A bookable room.  Immutable catalog entry."""

    slug: str
    name: str
    calendar_id: Optional[str] = None
    prices: list[TokenPrice] = []
    channel_id: Optional[str] = None

    model_config = {"frozen": True}

    @property
    def bookable(self) -> bool:
        return bool(self.calendar_id)

    def rate_for(self, token: str) -> Decimal | None:
        for price in self.prices:
            if price.token == token:
                return price.amount
        return None


class CommunitySettings(BaseModel):
    """Settings for one community (chat guild)."""

    id: str
    name: str = ""
    timezone: str = ""
    tokens: dict[str, TokenConfig] = {}
    rooms: list[Resource] = []

    def room(self, slug: str) -> Resource | None:
        for room in self.rooms:
            if room.slug == slug:
                return room
        return None

    def token(self, symbol: str) -> TokenConfig | None:
        return self.tokens.get(symbol)
