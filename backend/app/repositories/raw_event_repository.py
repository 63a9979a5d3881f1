"""Append-only access to the per-type raw chain event tables."""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.domain import ChainEvent, EventType
from app.errors import DuplicateEvent
from app.models import RAW_EVENT_MODELS, ProcessingStatus, RawEventMixin, utcnow

from .types import AppendOutcome, AppendResult

_POLLABLE_STATUSES = (ProcessingStatus.PENDING.value, ProcessingStatus.DEFERRED.value)


def _json_safe(payload: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if payload is None:
        return None
    safe: dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, Decimal):
            safe[key] = str(value)
        elif isinstance(value, datetime):
            safe[key] = value.isoformat()
        elif isinstance(value, Mapping):
            safe[key] = _json_safe(value)
        else:
            safe[key] = value
    return safe


class RawEventRepository:
    """Store and poll raw events; rows are never mutated beyond bookkeeping."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Appends

    def append(
        self,
        event: ChainEvent,
        *,
        payload: Mapping[str, Any] | None = None,
    ) -> AppendResult:
        """Store ``event`` unless its ``(event type, chain event id)`` already exists."""

        model = RAW_EVENT_MODELS[event.event_type]
        fields = asdict(event)
        row = model(**fields, payload=_json_safe(payload))
        return self._insert(row)

    def append_quarantined(
        self,
        event_type: EventType,
        envelope: Mapping[str, Any],
        *,
        payload: Mapping[str, Any] | None,
        reason: str,
    ) -> AppendResult:
        """Store a payload that could not be read so it is kept for inspection."""

        model = RAW_EVENT_MODELS[event_type]
        row = model(
            **envelope,
            payload=_json_safe(payload),
            processing_status=ProcessingStatus.QUARANTINED.value,
            last_error=reason,
        )
        return self._insert(row)

    def _insert(self, row: RawEventMixin) -> AppendResult:
        try:
            self._insert_unique(row)
        except DuplicateEvent:
            logger.debug(
                "Ignoring redelivered {} event {}", row.event_type.value, row.chain_event_id
            )
            if row in self._session:
                self._session.expunge(row)
            return AppendResult(
                event_type=row.event_type,
                chain_event_id=row.chain_event_id,
                outcome=AppendOutcome.DUPLICATE_IGNORED,
                row_id=self._find_id(type(row), row.chain_event_id),
            )
        return AppendResult(
            event_type=row.event_type,
            chain_event_id=row.chain_event_id,
            outcome=AppendOutcome.ACCEPTED,
            row_id=row.id,
        )

    def _insert_unique(self, row: RawEventMixin) -> None:
        if self._find_id(type(row), row.chain_event_id) is not None:
            raise DuplicateEvent(row.event_type.value, row.chain_event_id)
        try:
            with self._session.begin_nested():
                self._session.add(row)
                self._session.flush()
        except IntegrityError as exc:
            # Lost a race with a concurrent producer delivering the same log.
            if self._find_id(type(row), row.chain_event_id) is None:
                raise
            raise DuplicateEvent(row.event_type.value, row.chain_event_id) from exc

    def _find_id(self, model: type[RawEventMixin], chain_event_id: str) -> int | None:
        return self._session.scalar(
            select(model.id).where(model.chain_event_id == chain_event_id)
        )

    # ------------------------------------------------------------------
    # Queries

    def get(
        self,
        event_type: EventType,
        row_id: int,
        *,
        for_update: bool = False,
    ) -> RawEventMixin | None:
        model = RAW_EVENT_MODELS[event_type]
        query = select(model).where(model.id == row_id)
        if for_update:
            query = query.with_for_update()
        return self._session.scalars(query).first()

    def get_by_chain_id(self, event_type: EventType, chain_event_id: str) -> RawEventMixin | None:
        model = RAW_EVENT_MODELS[event_type]
        return self._session.scalars(
            select(model).where(model.chain_event_id == chain_event_id)
        ).first()

    def poll_unprocessed(self, event_type: EventType, limit: int) -> list[RawEventMixin]:
        """Return pending and deferred rows of one type in chain order."""

        model = RAW_EVENT_MODELS[event_type]
        query = (
            select(model)
            .where(model.processing_status.in_(_POLLABLE_STATUSES))
            .order_by(model.block_number, model.log_index, model.id)
            .limit(limit)
        )
        return list(self._session.scalars(query))

    def status_counts(self, event_type: EventType) -> dict[str, int]:
        model = RAW_EVENT_MODELS[event_type]
        rows = self._session.execute(
            select(model.processing_status, func.count(model.id)).group_by(model.processing_status)
        ).all()
        return {status: count for status, count in rows}

    def market_for_bet(self, chain_bet_id: str) -> str | None:
        """Chain market id of the bet-placed event carrying ``chain_bet_id``."""

        model = RAW_EVENT_MODELS[EventType.BET_PLACED]
        return self._session.scalar(
            select(model.chain_market_id).where(model.chain_bet_id == chain_bet_id).limit(1)
        )

    # ------------------------------------------------------------------
    # Processing bookkeeping

    def mark_processed(self, row: RawEventMixin) -> None:
        row.processing_status = ProcessingStatus.PROCESSED.value
        row.attempts += 1
        row.last_error = None
        row.processed_at = utcnow()

    def defer(self, row: RawEventMixin, reason: str) -> None:
        row.processing_status = ProcessingStatus.DEFERRED.value
        row.attempts += 1
        row.last_error = reason

    def quarantine(self, row: RawEventMixin, reason: str) -> None:
        row.processing_status = ProcessingStatus.QUARANTINED.value
        row.attempts += 1
        row.last_error = reason


__all__ = ["RawEventRepository"]
