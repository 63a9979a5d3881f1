from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, ContextManager, Iterable, Iterator, Mapping

from loguru import logger
from sqlalchemy.orm import Session

from app.db import SessionLocal
from app.domain import EventType
from app.errors import MalformedEvent
from app.repositories import AppendResult, RawEventRepository, SyncCursorRepository

from .normalize import extract_envelope, normalize_event, parse_event_type


@contextmanager
def session_scope() -> Iterator[Session]:
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def append_raw_event(
    session: Session,
    event_type: str | EventType,
    payload: Mapping[str, Any],
) -> AppendResult:
    """Store one producer payload in its raw table.

    Payloads that cannot be read as their event type are still stored, marked
    quarantined, as long as they carry enough envelope to be keyed. Payloads
    without a usable envelope raise :class:`MalformedEvent`.
    """

    resolved_type = parse_event_type(event_type)
    repo = RawEventRepository(session)
    try:
        event = normalize_event(resolved_type, payload)
    except MalformedEvent as exc:
        envelope = extract_envelope(resolved_type, payload, strict=False)
        logger.error(
            "Quarantining malformed {} event {}: {}",
            resolved_type.value,
            envelope["chain_event_id"],
            exc,
        )
        return repo.append_quarantined(resolved_type, envelope, payload=payload, reason=str(exc))
    return repo.append(event, payload=payload)


def ingest_block_range(
    contract_address: str,
    events: Iterable[tuple[str | EventType, Mapping[str, Any]]],
    *,
    to_block: int,
    block_hash: str | None = None,
    contract_name: str | None = None,
    session_factory: Callable[[], ContextManager[Session]] = session_scope,
) -> list[AppendResult]:
    """Append a producer batch and advance the contract cursor atomically.

    Payloads too broken to key (no event id, and no tx hash plus log index)
    are logged and dropped so they cannot wedge the cursor.
    """

    results: list[AppendResult] = []
    skipped = 0
    with session_factory() as session:
        for event_type, payload in events:
            try:
                results.append(append_raw_event(session, event_type, payload))
            except MalformedEvent as exc:
                # Nothing to key it by, so it cannot be stored; keep the batch moving.
                skipped += 1
                logger.error("Dropping unkeyable {} payload {!r}: {}", event_type, payload, exc)
        SyncCursorRepository(session).advance(
            contract_address,
            to_block,
            block_hash=block_hash,
            contract_name=contract_name,
        )

    accepted = sum(1 for result in results if result.accepted)
    logger.info(
        "Ingested {} events for {} up to block {} ({} duplicates ignored, {} unkeyable dropped)",
        accepted,
        contract_address,
        to_block,
        len(results) - accepted,
        skipped,
    )
    return results


def seed_watched_contracts(
    contracts: Mapping[str, str],
    *,
    session_factory: Callable[[], ContextManager[Session]] = session_scope,
) -> int:
    """Create a cursor row for every configured contract that lacks one."""

    if not contracts:
        return 0
    with session_factory() as session:
        repo = SyncCursorRepository(session)
        for address, name in contracts.items():
            repo.seed(address, name)
    logger.info("Seeded sync cursors for {} watched contracts", len(contracts))
    return len(contracts)


__all__ = [
    "append_raw_event",
    "ingest_block_range",
    "seed_watched_contracts",
    "session_scope",
]
