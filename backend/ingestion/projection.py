"""Drive the projector over stored raw events, one transaction per event."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, ContextManager, Iterable

from loguru import logger
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.domain import EventType
from app.errors import (
    ConcurrencyConflict,
    InvariantViolation,
    MalformedEvent,
    UnresolvedMarketReference,
)
from app.models import RawEventMixin
from app.repositories import AppendResult, RawEventRepository
from app.services.locks import MarketLockRegistry, market_lock_key, market_locks
from app.services.projector import ProjectionResult, Projector

from .service import session_scope


class ProcessingOutcome(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    QUARANTINED = "quarantined"


@dataclass(slots=True)
class ProcessingReport:
    event_type: EventType
    row_id: int
    outcome: ProcessingOutcome
    result: ProjectionResult | None = None
    error: str | None = None


def partition_key(repo: RawEventRepository, row: RawEventMixin) -> str:
    """Key that groups every event touching the same market."""

    chain_market_id = getattr(row, "chain_market_id", None)
    if chain_market_id:
        return market_lock_key(chain_market_id)
    chain_bet_id = getattr(row, "chain_bet_id", None)
    if chain_bet_id:
        bet_market = repo.market_for_bet(chain_bet_id)
        if bet_market:
            return market_lock_key(bet_market)
        return f"bet:{chain_bet_id}"
    return f"{row.event_type.value}:{row.chain_event_id}"


class ProjectionService:
    """Project raw rows with retries, deferral and quarantine.

    Lock contention is retried with the configured backoff schedule and then
    deferred. Events referencing markets or bets that do not exist yet are
    deferred for a later pass. Events that would break an invariant are
    quarantined for manual inspection.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        session_factory: Callable[[], ContextManager[Session]] = session_scope,
        locks: MarketLockRegistry = market_locks,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self._locks = locks
        self._sleep = sleep

    def process(
        self,
        event_type: EventType,
        row_id: int,
        *,
        lock_key: str | None = None,
    ) -> ProcessingReport:
        if lock_key is None:
            lock_key = self._lookup_lock_key(event_type, row_id)

        attempts = self.settings.pipeline_db_retry_attempts
        schedule = self.settings.pipeline_db_retry_backoff_schedule
        last_error: str | None = None
        for attempt in range(1, attempts + 1):
            try:
                with self._locks.hold(lock_key):
                    return self._process_once(event_type, row_id)
            except ConcurrencyConflict as exc:
                last_error = str(exc)
                if attempt >= attempts:
                    break
                delay = schedule[min(attempt - 1, len(schedule) - 1)]
                logger.warning(
                    "Contention projecting {} row {} (attempt {}/{}); retrying in {:.1f}s",
                    event_type.value,
                    row_id,
                    attempt,
                    attempts,
                    delay,
                )
                self._sleep(delay)
            except UnresolvedMarketReference as exc:
                logger.warning("Deferring {} row {}: {}", event_type.value, row_id, exc)
                return self._record(event_type, row_id, ProcessingOutcome.DEFERRED, str(exc))
            except (InvariantViolation, MalformedEvent) as exc:
                logger.error("Quarantining {} row {}: {}", event_type.value, row_id, exc)
                return self._record(event_type, row_id, ProcessingOutcome.QUARANTINED, str(exc))
            except Exception as exc:
                # Anything outside the taxonomy is quarantined so later events still run.
                logger.exception("Unexpected error projecting {} row {}; quarantining", event_type.value, row_id)
                return self._record(
                    event_type,
                    row_id,
                    ProcessingOutcome.QUARANTINED,
                    f"{type(exc).__name__}: {exc}",
                )

        logger.error(
            "Giving up on {} row {} after {} attempts; deferring",
            event_type.value,
            row_id,
            attempts,
        )
        return self._record(
            event_type,
            row_id,
            ProcessingOutcome.DEFERRED,
            f"concurrency conflict: {last_error}",
        )

    def process_appended(self, results: Iterable[AppendResult]) -> list[ProcessingReport]:
        """Project freshly appended rows right away, in append order."""

        return [
            self.process(result.event_type, result.row_id)
            for result in results
            if result.accepted and result.row_id is not None
        ]

    def relink_orphans(self) -> int:
        """Link unlinked bets whose market has been projected since they were stored."""

        with self._session_factory() as session:
            chain_market_ids = Projector(session).orphaned_market_ids()

        linked = 0
        for chain_market_id in chain_market_ids:
            with self._locks.hold(market_lock_key(chain_market_id)):
                with self._session_factory() as session:
                    linked += Projector(session).link_orphans(chain_market_id)
        if linked:
            logger.warning(
                "Linked {} bets that missed their market creation across {} markets",
                linked,
                len(chain_market_ids),
            )
        return linked

    def _process_once(self, event_type: EventType, row_id: int) -> ProcessingReport:
        try:
            with self._session_factory() as session:
                row = RawEventRepository(session).get(event_type, row_id, for_update=True)
                if row is None:
                    raise LookupError(f"No {event_type.value} row with id {row_id}")
                result = Projector(session).apply(row)
        except (OperationalError, IntegrityError) as exc:
            raise ConcurrencyConflict(str(exc.orig or exc)) from exc

        outcome = ProcessingOutcome.PROCESSED if result is not None else ProcessingOutcome.SKIPPED
        return ProcessingReport(event_type=event_type, row_id=row_id, outcome=outcome, result=result)

    def _record(
        self,
        event_type: EventType,
        row_id: int,
        outcome: ProcessingOutcome,
        reason: str,
    ) -> ProcessingReport:
        with self._session_factory() as session:
            repo = RawEventRepository(session)
            row = repo.get(event_type, row_id, for_update=True)
            if row is not None:
                if outcome == ProcessingOutcome.QUARANTINED:
                    repo.quarantine(row, reason)
                else:
                    repo.defer(row, reason)
        return ProcessingReport(event_type=event_type, row_id=row_id, outcome=outcome, error=reason)

    def _lookup_lock_key(self, event_type: EventType, row_id: int) -> str | None:
        with self._session_factory() as session:
            repo = RawEventRepository(session)
            row = repo.get(event_type, row_id)
            if row is None:
                return None
            return partition_key(repo, row)


__all__ = [
    "ProcessingOutcome",
    "ProcessingReport",
    "ProjectionService",
    "partition_key",
]
