"""Drift recovery for market aggregates and historical bet odds."""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, ContextManager, Sequence

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.db import init_db
from app.models import Market
from app.services.aggregates import recompute_market, verify_market
from app.services.odds import OddsRepairSummary, recompute_historical_odds
from app.services.projector import Projector
from ingestion.service import session_scope


@dataclass(slots=True)
class RepairSummary:
    dry_run: bool
    markets_checked: int = 0
    markets_repaired: int = 0
    orphans_linked: int = 0
    violations: dict[str, list[str]] = field(default_factory=dict)
    stats_changes: list[dict[str, Any]] = field(default_factory=list)
    odds: OddsRepairSummary | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "markets_checked": self.markets_checked,
            "markets_repaired": self.markets_repaired,
            "orphans_linked": self.orphans_linked,
            "violations": self.violations,
            "stats_changes": self.stats_changes,
            "odds": self.odds.to_dict() if self.odds else None,
        }


class RepairPipeline:
    """Verify, and optionally rebuild, derived market state from bet rows."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        session_factory: Callable[[], ContextManager[Session]] = session_scope,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory

    def run(
        self,
        *,
        stats: bool = False,
        odds: bool = False,
        market_id: int | None = None,
        dry_run: bool = False,
    ) -> RepairSummary:
        summary = RepairSummary(dry_run=dry_run)
        with self._session_factory() as session:
            projector = Projector(session)
            for chain_market_id in projector.orphaned_market_ids():
                linked = projector.link_orphans(chain_market_id)
                summary.orphans_linked += linked
                logger.warning("Linked {} stranded bets to market {}", linked, chain_market_id)

            query = select(Market).order_by(Market.id)
            if market_id is not None:
                query = query.where(Market.id == market_id)
            markets = session.scalars(query.with_for_update()).all()

            for market in markets:
                summary.markets_checked += 1
                problems = verify_market(session, market)
                if problems:
                    summary.violations[str(market.id)] = problems
                    logger.warning("Market {} aggregates drifted: {}", market.id, "; ".join(problems))
                if stats and problems and not dry_run:
                    repair = recompute_market(session, market)
                    if repair.changed:
                        summary.markets_repaired += 1
                        summary.stats_changes.append(repair.to_dict())

            if odds:
                summary.odds = recompute_historical_odds(session, market_id=market_id, dry_run=dry_run)

            if dry_run:
                session.rollback()

        logger.info(
            "Repair run checked {} markets; {} drifted, {} repaired, {} orphan bets linked",
            summary.markets_checked,
            len(summary.violations),
            summary.markets_repaired,
            summary.orphans_linked,
        )
        return summary


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Verify and repair derived market state")
    parser.add_argument(
        "--stats",
        action="store_true",
        help="Rebuild pool sizes, counts, shares and volume from bets for drifted markets",
    )
    parser.add_argument(
        "--odds",
        action="store_true",
        help="Recompute every bet's odds from the pool snapshot preceding it",
    )
    parser.add_argument(
        "--market-id",
        type=int,
        default=None,
        help="Restrict the run to one canonical market id",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change without persisting anything",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Write JSON summary to the specified path",
    )
    return parser.parse_args(argv)


def _write_summary(path: Path, summary: RepairSummary) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(summary.to_dict(), indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )
    logger.info("Repair summary written to {}", path)


def main(argv: Sequence[str] | None = None) -> RepairSummary:
    args = _parse_args(argv)
    init_db()
    summary = RepairPipeline(get_settings()).run(
        stats=args.stats,
        odds=args.odds,
        market_id=args.market_id,
        dry_run=args.dry_run,
    )
    if args.summary_path:
        _write_summary(args.summary_path, summary)
    return summary


if __name__ == "__main__":
    main()
