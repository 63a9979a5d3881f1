"""Worker that drains unprocessed raw events into canonical state."""

from __future__ import annotations

import argparse
import json
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, ContextManager, Sequence
from uuid import uuid4

from loguru import logger
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.db import init_db
from app.domain import EVENT_PRIORITY, EventType
from app.repositories import RawEventRepository
from ingestion.projection import (
    ProcessingOutcome,
    ProcessingReport,
    ProjectionService,
    partition_key,
)
from ingestion.service import seed_watched_contracts, session_scope


@dataclass(slots=True, frozen=True)
class PendingEvent:
    event_type: EventType
    row_id: int
    block_number: int
    log_index: int
    partition: str

    @property
    def ordering_key(self) -> tuple[int, int, int, int]:
        return (self.block_number, self.log_index, EVENT_PRIORITY[self.event_type], self.row_id)


@dataclass(slots=True)
class ProjectionSummary:
    run_id: str
    started_at: datetime
    finished_at: datetime | None = None
    passes: int = 0
    handled: int = 0
    processed: int = 0
    skipped: int = 0
    quarantined: int = 0
    relinked: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    deferred_events: dict[str, str | None] = field(default_factory=dict)
    failures: list[dict[str, Any]] = field(default_factory=list)

    @property
    def deferred(self) -> int:
        return len(self.deferred_events)

    def record(self, report: ProcessingReport) -> None:
        self.handled += 1
        event_key = f"{report.event_type.value}:{report.row_id}"
        if report.outcome == ProcessingOutcome.DEFERRED:
            self.deferred_events[event_key] = report.error
            return
        self.deferred_events.pop(event_key, None)
        if report.outcome == ProcessingOutcome.PROCESSED:
            self.processed += 1
            key = report.event_type.value
            self.by_type[key] = self.by_type.get(key, 0) + 1
        elif report.outcome == ProcessingOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.quarantined += 1
            self.failures.append(
                {
                    "event_type": report.event_type.value,
                    "row_id": report.row_id,
                    "reason": report.error,
                }
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "passes": self.passes,
            "processed": self.processed,
            "skipped": self.skipped,
            "deferred": self.deferred,
            "quarantined": self.quarantined,
            "relinked": self.relinked,
            "by_type": dict(sorted(self.by_type.items())),
            "deferred_events": dict(sorted(self.deferred_events.items())),
            "failures": self.failures,
        }


class ProjectionPipeline:
    """Poll every raw table, order events by chain position, project by market.

    Events are grouped by market. Groups run in parallel when more than one
    worker is configured, and each group is projected sequentially in chain
    order. Passes repeat until a pass makes no progress, so events deferred
    behind a market created later in the same backlog are picked up again.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        session_factory: Callable[[], ContextManager[Session]] = session_scope,
        service: ProjectionService | None = None,
        workers: int | None = None,
        batch_size: int | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self._service = service or ProjectionService(self.settings, session_factory=session_factory)
        self._workers = workers or self.settings.projection_workers
        self._batch_size = batch_size or self.settings.projection_batch_size

    def run(self, *, once: bool = False, limit: int | None = None) -> ProjectionSummary:
        summary = ProjectionSummary(run_id=str(uuid4()), started_at=datetime.now(timezone.utc))
        logger.info(
            "Starting projection run {} (workers={}, batch_size={})",
            summary.run_id,
            self._workers,
            self._batch_size,
        )

        while True:
            summary.relinked += self._service.relink_orphans()
            pending = self.collect_pending()
            if limit is not None:
                remaining = limit - summary.handled
                if remaining <= 0:
                    logger.info("Limit reached ({}); stopping early", limit)
                    break
                pending = pending[:remaining]
            if not pending:
                break

            summary.passes += 1
            processed_before = summary.processed
            reports = self._run_pass(pending)
            for report in reports:
                summary.record(report)

            made_progress = summary.processed > processed_before
            if once or not made_progress:
                break

        summary.finished_at = datetime.now(timezone.utc)
        logger.info(
            "Projection run {} completed. processed={}, deferred={}, quarantined={}, passes={}",
            summary.run_id,
            summary.processed,
            summary.deferred,
            summary.quarantined,
            summary.passes,
        )
        if summary.quarantined:
            logger.warning(
                "Projection run quarantined {} events; inspect raw tables for details",
                summary.quarantined,
            )
        return summary

    def collect_pending(self) -> list[PendingEvent]:
        pending: list[PendingEvent] = []
        with self._session_factory() as session:
            repo = RawEventRepository(session)
            for event_type in EventType:
                for row in repo.poll_unprocessed(event_type, self._batch_size):
                    pending.append(
                        PendingEvent(
                            event_type=event_type,
                            row_id=row.id,
                            block_number=row.block_number,
                            log_index=row.log_index,
                            partition=partition_key(repo, row),
                        )
                    )
        pending.sort(key=lambda item: item.ordering_key)
        return pending

    def _run_pass(self, pending: Sequence[PendingEvent]) -> list[ProcessingReport]:
        groups = _group_by_partition(pending)
        if self._workers <= 1 or len(groups) <= 1:
            reports: list[ProcessingReport] = []
            for group in groups.values():
                reports.extend(self._project_group(group))
            return reports

        with ThreadPoolExecutor(max_workers=self._workers) as executor:
            results = list(executor.map(self._project_group, groups.values()))
        return [report for group_reports in results for report in group_reports]

    def _project_group(self, group: Sequence[PendingEvent]) -> list[ProcessingReport]:
        return [
            self._service.process(item.event_type, item.row_id, lock_key=item.partition)
            for item in group
        ]


def _group_by_partition(pending: Sequence[PendingEvent]) -> OrderedDict[str, list[PendingEvent]]:
    groups: OrderedDict[str, list[PendingEvent]] = OrderedDict()
    for item in pending:
        groups.setdefault(item.partition, []).append(item)
    return groups


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Project pending raw chain events into canonical state")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single polling pass instead of draining until no progress is made",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Optional cap on the number of events handled (testing only)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=settings.projection_workers,
        help="Worker threads; events for one market always stay on one worker",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=settings.projection_batch_size,
        help="Maximum events polled per event type on each pass",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Write JSON summary to the specified path",
    )
    return parser.parse_args(argv)


def _write_summary(path: Path, summary: ProjectionSummary) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(summary.to_dict(), indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )
    logger.info("Wrote projection summary to {}", path)


def main(argv: Sequence[str] | None = None) -> ProjectionSummary:
    args = _parse_args(argv)
    settings = get_settings()
    init_db()
    seed_watched_contracts(settings.watched_contracts)

    pipeline = ProjectionPipeline(settings, workers=args.workers, batch_size=args.batch_size)
    summary = pipeline.run(once=args.once, limit=args.limit)
    if args.summary_path:
        _write_summary(args.summary_path, summary)
    return summary


if __name__ == "__main__":
    main()
