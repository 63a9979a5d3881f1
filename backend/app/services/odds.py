"""Bet odds from pool state, plus the historical odds repair."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import Bet, Market

ODDS_QUANTUM = Decimal("0.01")
EVEN_ODDS = Decimal("1.00")


def _as_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def compute_odds(position: bool, yes_pool: Any, no_pool: Any) -> Decimal:
    """Payout multiple for a bet on ``position`` given the pools before that bet.

    ``(yes_pool + no_pool) / side_pool`` rounded half-up to two places, or
    ``1.00`` while the chosen side is still empty.
    """

    yes = _as_decimal(yes_pool)
    no = _as_decimal(no_pool)
    side = yes if position else no
    if side <= 0:
        return EVEN_ODDS
    return ((yes + no) / side).quantize(ODDS_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(slots=True)
class OddsRepairSummary:
    markets_checked: int = 0
    bets_checked: int = 0
    bets_updated: int = 0
    changes: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "markets_checked": self.markets_checked,
            "bets_checked": self.bets_checked,
            "bets_updated": self.bets_updated,
            "changes": self.changes,
        }


def recompute_historical_odds(
    session: Session,
    *,
    market_id: int | None = None,
    dry_run: bool = False,
) -> OddsRepairSummary:
    """Replay each market's bets in chain order and rewrite drifted odds.

    Every bet linked to a market contributed its amount when it was created,
    whatever its later status, so all of them feed the running pool snapshot.
    Running this twice yields no further changes.
    """

    summary = OddsRepairSummary()
    market_query = select(Market.id).order_by(Market.id)
    if market_id is not None:
        market_query = market_query.where(Market.id == market_id)

    for current_market_id in session.scalars(market_query).all():
        summary.markets_checked += 1
        bets = session.scalars(
            select(Bet)
            .where(Bet.market_id == current_market_id)
            .order_by(Bet.block_number, Bet.log_index, Bet.id)
        ).all()

        yes_pool = Decimal("0")
        no_pool = Decimal("0")
        for bet in bets:
            summary.bets_checked += 1
            expected = compute_odds(bet.position, yes_pool, no_pool)
            if bet.odds is None or _as_decimal(bet.odds) != expected:
                summary.bets_updated += 1
                summary.changes.append(
                    {
                        "bet_id": bet.id,
                        "market_id": current_market_id,
                        "previous": str(bet.odds) if bet.odds is not None else None,
                        "recomputed": str(expected),
                    }
                )
                if not dry_run:
                    bet.odds = expected
            amount = _as_decimal(bet.amount)
            if bet.position:
                yes_pool += amount
            else:
                no_pool += amount

    logger.info(
        "Odds repair checked {} bets across {} markets; {} {}",
        summary.bets_checked,
        summary.markets_checked,
        summary.bets_updated,
        "would change" if dry_run else "updated",
    )
    return summary


__all__ = ["EVEN_ODDS", "OddsRepairSummary", "compute_odds", "recompute_historical_odds"]
