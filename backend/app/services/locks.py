"""Exclusive locks keyed by chain market id."""

from __future__ import annotations

import hashlib
import threading
from collections.abc import Iterator
from contextlib import contextmanager


def market_lock_key(chain_market_id: str) -> str:
    return f"market:{chain_market_id}"


def advisory_lock_id(key: str) -> int:
    """Signed 64-bit id for ``pg_advisory_xact_lock`` derived from ``key``."""

    digest = hashlib.blake2b(key.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class MarketLockRegistry:
    """Hand out one lock per market so same-market projections never overlap.

    This covers threads sharing one process, including on SQLite. Separate
    processes on Postgres are serialized by the projector's transaction-scoped
    advisory lock on the same key, which holds even before the market row
    exists.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str | None) -> Iterator[None]:
        if key is None:
            yield
            return
        lock = self.lock_for(key)
        with lock:
            yield


market_locks = MarketLockRegistry()

__all__ = ["MarketLockRegistry", "advisory_lock_id", "market_lock_key", "market_locks"]
