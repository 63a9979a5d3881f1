import argparse
import json
from pathlib import Path
from typing import Any, Iterator

from loguru import logger

from app.core.config import get_settings
from app.db import init_db
from ingestion.projection import ProjectionService
from ingestion.service import ingest_block_range


def _iter_records(path: Path) -> Iterator[tuple[str, dict[str, Any]]]:
    """Yield ``(event_type, payload)`` pairs from a JSON-lines export."""

    with path.open(encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping unreadable line {} in {}", line_number, path)
                continue
            event_type = record.get("type") or record.get("eventType")
            payload = record.get("payload") or {
                key: value for key, value in record.items() if key not in {"type", "eventType"}
            }
            if not event_type:
                logger.warning("Skipping line {} without an event type", line_number)
                continue
            yield event_type, payload


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Append exported chain events to the raw event store")
    parser.add_argument("path", type=Path, help="JSON-lines file with one event per line")
    parser.add_argument("--contract", required=True, help="Address of the contract that emitted the events")
    parser.add_argument("--contract-name", default=None, help="Human readable contract name for the cursor")
    parser.add_argument("--to-block", type=int, required=True, help="Last block covered by the export")
    parser.add_argument("--block-hash", default=None, help="Hash of --to-block, stored on the cursor")
    parser.add_argument(
        "--project",
        action="store_true",
        help="Project the newly appended events immediately instead of leaving them for the worker",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = get_settings()
    init_db()

    results = ingest_block_range(
        args.contract,
        _iter_records(args.path),
        to_block=args.to_block,
        block_hash=args.block_hash,
        contract_name=args.contract_name or settings.watched_contracts.get(args.contract.lower()),
    )

    if args.project:
        reports = ProjectionService(settings).process_appended(results)
        logger.info("Projected {} appended events", len(reports))


if __name__ == "__main__":
    main()
