"""Shared repository result types."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from app.domain import EventType


class AppendOutcome(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE_IGNORED = "duplicate_ignored"


@dataclass(slots=True)
class AppendResult:
    """Outcome of storing one raw event."""

    event_type: EventType
    chain_event_id: str
    outcome: AppendOutcome
    row_id: int | None = None

    @property
    def accepted(self) -> bool:
        return self.outcome == AppendOutcome.ACCEPTED


__all__ = ["AppendOutcome", "AppendResult"]
