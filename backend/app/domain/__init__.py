"""Domain events emitted by the prediction market contracts."""

from .events import (
    EVENT_CLASSES,
    EVENT_PRIORITY,
    BetPlaced,
    ChainEvent,
    EventType,
    MarketCreated,
    MarketResolved,
    MarketVaultRebalanced,
    WinningsClaimed,
)

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
