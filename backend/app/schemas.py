from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, field_validator


def _to_amount(value: Any) -> str | None:
    """Exact fixed-point text for an on-chain amount, trailing zeros removed."""

    if value is None:
        return None
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    text = format(amount, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def _to_float(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)


class Market(BaseModel):
    id: int
    chain_market_id: str | None = None
    question: str
    end_date: datetime | None = None
    status: str
    result: bool | None = None
    resolution_date: datetime | None = None
    vault_address: str | None = None
    yes_pool_size: str
    no_pool_size: str
    total_pool_size: str
    volume: str
    count_yes: int
    count_no: int
    total_yes_shares: str
    total_no_shares: str
    rebalance_count: int = 0
    total_rebalanced_amount: str = "0"
    last_rebalanced_at: datetime | None = None

    model_config = {"from_attributes": True}

    @field_validator(
        "yes_pool_size",
        "no_pool_size",
        "total_pool_size",
        "volume",
        "total_yes_shares",
        "total_no_shares",
        "total_rebalanced_amount",
        mode="before",
    )
    @classmethod
    def _coerce_amount(cls, value: Any) -> str | None:
        return _to_amount(value)


class MarketList(BaseModel):
    total: int
    items: list[Market]


class Bet(BaseModel):
    id: int
    chain_bet_id: str | None = None
    user_id: int
    market_id: int | None = None
    chain_market_id: str
    position: bool
    amount: str
    shares: str | None = None
    odds: float | None = None
    status: str
    payout: str | None = None
    block_number: int
    transaction_hash: str
    placed_at: datetime | None = None
    claimed_at: datetime | None = None

    model_config = {"from_attributes": True}

    @field_validator("amount", "shares", "payout", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> str | None:
        return _to_amount(value)

    @field_validator("odds", mode="before")
    @classmethod
    def _coerce_odds(cls, value: Any) -> float | None:
        return _to_float(value)


class BetList(BaseModel):
    total: int
    items: list[Bet]


class User(BaseModel):
    id: int
    address: str
    created_at: datetime

    model_config = {"from_attributes": True}


class SyncCursor(BaseModel):
    contract_address: str
    contract_name: str | None = None
    last_block: int
    last_block_hash: str | None = None
    updated_at: datetime

    model_config = {"from_attributes": True}
