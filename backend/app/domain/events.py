"""Typed chain events shared by ingestion, projection and repair jobs.

Each event type is a single dataclass whose optional fields cover every
contract generation seen on chain. Handlers branch on capability properties
(``has_explicit_bet_id``, ``is_vault_model``) instead of on contract version.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import ClassVar


class EventType(str, Enum):
    MARKET_CREATED = "market_created"
    BET_PLACED = "bet_placed"
    MARKET_RESOLVED = "market_resolved"
    WINNINGS_CLAIMED = "winnings_claimed"
    MARKET_VAULT_REBALANCED = "market_vault_rebalanced"


# Tie-breaker for events sharing a block and log index across tables.
EVENT_PRIORITY: dict[EventType, int] = {
    EventType.MARKET_CREATED: 0,
    EventType.BET_PLACED: 1,
    EventType.MARKET_RESOLVED: 2,
    EventType.WINNINGS_CLAIMED: 3,
    EventType.MARKET_VAULT_REBALANCED: 4,
}


def _from_unix(value: int | None) -> datetime | None:
    if value is None or value <= 0:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


@dataclass(slots=True)
class ChainEvent:
    """Envelope fields every emitted log carries."""

    event_type: ClassVar[EventType]

    chain_event_id: str
    block_number: int
    block_timestamp: datetime | None
    transaction_hash: str
    log_index: int

    @property
    def ordering_key(self) -> tuple[int, int, int]:
        return (self.block_number, self.log_index, EVENT_PRIORITY[self.event_type])


@dataclass(slots=True)
class MarketCreated(ChainEvent):
    event_type: ClassVar[EventType] = EventType.MARKET_CREATED

    chain_market_id: str
    question: str
    end_time: int | None = None
    betting_deadline: int | None = None
    vault_address: str | None = None

    @property
    def end_date(self) -> datetime | None:
        """Primary end time, falling back to the betting deadline when absent or zero."""

        return _from_unix(self.end_time) or _from_unix(self.betting_deadline)

    @property
    def is_vault_model(self) -> bool:
        return self.vault_address is not None


@dataclass(slots=True)
class BetPlaced(ChainEvent):
    event_type: ClassVar[EventType] = EventType.BET_PLACED

    chain_market_id: str
    user_address: str
    position: bool
    amount: Decimal
    shares: Decimal | None = None
    chain_bet_id: str | None = None

    @property
    def has_explicit_bet_id(self) -> bool:
        return self.chain_bet_id is not None

    @property
    def is_vault_model(self) -> bool:
        return self.shares is not None


@dataclass(slots=True)
class MarketResolved(ChainEvent):
    event_type: ClassVar[EventType] = EventType.MARKET_RESOLVED

    chain_market_id: str
    outcome: bool


@dataclass(slots=True)
class WinningsClaimed(ChainEvent):
    event_type: ClassVar[EventType] = EventType.WINNINGS_CLAIMED

    user_address: str
    winning_amount: Decimal
    chain_market_id: str | None = None
    chain_bet_id: str | None = None

    @property
    def has_explicit_bet_id(self) -> bool:
        return self.chain_bet_id is not None


@dataclass(slots=True)
class MarketVaultRebalanced(ChainEvent):
    event_type: ClassVar[EventType] = EventType.MARKET_VAULT_REBALANCED

    chain_market_id: str
    amount: Decimal


EVENT_CLASSES: dict[EventType, type[ChainEvent]] = {
    cls.event_type: cls
    for cls in (
        MarketCreated,
        BetPlaced,
        MarketResolved,
        WinningsClaimed,
        MarketVaultRebalanced,
    )
}


__all__ = [
    "BetPlaced",
    "ChainEvent",
    "EVENT_CLASSES",
    "EVENT_PRIORITY",
    "EventType",
    "MarketCreated",
    "MarketResolved",
    "MarketVaultRebalanced",
    "WinningsClaimed",
]
