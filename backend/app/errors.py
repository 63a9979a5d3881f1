"""Failure modes raised while turning raw chain events into canonical state."""

from __future__ import annotations


class SyncError(Exception):
    """Base class for projection failures."""


class DuplicateEvent(SyncError):
    """Raised when an event key was already stored or already applied."""

    def __init__(self, event_type: str, chain_event_id: str) -> None:
        super().__init__(f"{event_type} event {chain_event_id} already recorded")
        self.event_type = event_type
        self.chain_event_id = chain_event_id


class MalformedEvent(SyncError, ValueError):
    """Raised when a raw payload cannot be read as a known event shape."""


class UnresolvedMarketReference(SyncError, LookupError):
    """Raised when an event refers to a market or bet that is not projected yet."""


class InvariantViolation(SyncError):
    """Raised when applying an event would corrupt aggregates or lifecycle state."""


class ConcurrencyConflict(SyncError):
    """Raised when the store reports lock contention or a write race."""


__all__ = [
    "ConcurrencyConflict",
    "DuplicateEvent",
    "InvariantViolation",
    "MalformedEvent",
    "SyncError",
    "UnresolvedMarketReference",
]
