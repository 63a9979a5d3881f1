"""Repository abstractions for database interactions."""

from .entity_resolver import EntityResolver, normalize_address
from .market_repository import MarketRepository
from .raw_event_repository import RawEventRepository
from .sync_cursor_repository import SyncCursorRepository
from .types import AppendOutcome, AppendResult

__all__ = [
    "AppendOutcome",
    "AppendResult",
    "EntityResolver",
    "MarketRepository",
    "RawEventRepository",
    "SyncCursorRepository",
    "normalize_address",
]
