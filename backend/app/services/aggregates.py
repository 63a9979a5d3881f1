"""Derived pool statistics on markets.

Bet creation adds to a market's aggregates through :func:`apply_bet_created`
only. Later changes use compensating deltas (:func:`apply_bet_changed`,
:func:`apply_bet_removed`). :func:`recompute_market` rebuilds everything from
bet rows and is reserved for drift repair.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import InvariantViolation
from app.models import Bet, Market

ZERO = Decimal("0")


def _dec(value: Any) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(slots=True, frozen=True)
class BetContribution:
    """The part of a bet that feeds market aggregates."""

    position: bool
    amount: Decimal
    shares: Decimal | None = None

    @classmethod
    def of(cls, bet: Bet) -> BetContribution:
        return cls(
            position=bool(bet.position),
            amount=_dec(bet.amount),
            shares=_dec(bet.shares) if bet.shares is not None else None,
        )


@dataclass(slots=True)
class PoolState:
    yes_pool: Decimal = ZERO
    no_pool: Decimal = ZERO
    count_yes: int = 0
    count_no: int = 0
    yes_shares: Decimal = ZERO
    no_shares: Decimal = ZERO

    @classmethod
    def of(cls, market: Market) -> PoolState:
        return cls(
            yes_pool=_dec(market.yes_pool_size),
            no_pool=_dec(market.no_pool_size),
            count_yes=market.count_yes or 0,
            count_no=market.count_no or 0,
            yes_shares=_dec(market.total_yes_shares),
            no_shares=_dec(market.total_no_shares),
        )

    @property
    def total(self) -> Decimal:
        return self.yes_pool + self.no_pool

    def add(self, contribution: BetContribution, sign: int) -> None:
        amount = contribution.amount * sign
        shares = (contribution.shares or ZERO) * sign
        if contribution.position:
            self.yes_pool += amount
            self.count_yes += sign
            self.yes_shares += shares
        else:
            self.no_pool += amount
            self.count_no += sign
            self.no_shares += shares

    def validate(self, market: Market) -> None:
        negatives = [
            name
            for name, value in (
                ("yes_pool_size", self.yes_pool),
                ("no_pool_size", self.no_pool),
                ("count_yes", self.count_yes),
                ("count_no", self.count_no),
                ("total_yes_shares", self.yes_shares),
                ("total_no_shares", self.no_shares),
            )
            if value < 0
        ]
        if negatives:
            raise InvariantViolation(
                f"Market {market.id} (chain {market.chain_market_id}) would have negative "
                + ", ".join(negatives)
            )

    def write(self, market: Market) -> None:
        market.yes_pool_size = self.yes_pool
        market.no_pool_size = self.no_pool
        market.count_yes = self.count_yes
        market.count_no = self.count_no
        market.total_yes_shares = self.yes_shares
        market.total_no_shares = self.no_shares
        # Total and volume are always derived from the two sides.
        market.total_pool_size = self.total
        market.volume = self.total


def _apply(market: Market, deltas: list[tuple[BetContribution, int]]) -> PoolState:
    state = PoolState.of(market)
    for contribution, sign in deltas:
        state.add(contribution, sign)
    state.validate(market)
    state.write(market)
    return state


def apply_bet_created(market: Market, bet: Bet) -> None:
    if bet.amount is None or _dec(bet.amount) < 0:
        raise InvariantViolation(f"Bet {bet.source_event_id} has a negative or missing amount")
    state = _apply(market, [(BetContribution.of(bet), 1)])
    logger.debug(
        "Market {} pools now yes={} no={} after bet {}",
        market.chain_market_id,
        state.yes_pool,
        state.no_pool,
        bet.source_event_id,
    )


def apply_bet_changed(market: Market, previous: BetContribution, bet: Bet) -> None:
    """Back out ``previous`` and add the bet's current values in one step."""

    _apply(market, [(previous, -1), (BetContribution.of(bet), 1)])


def apply_bet_removed(market: Market, bet: Bet) -> None:
    _apply(market, [(BetContribution.of(bet), -1)])


# ----------------------------------------------------------------------
# Repair


@dataclass(slots=True)
class MarketStatsRepair:
    market_id: int
    chain_market_id: str | None
    before: dict[str, str] = field(default_factory=dict)
    after: dict[str, str] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.before != self.after

    def to_dict(self) -> dict[str, Any]:
        return {
            "market_id": self.market_id,
            "chain_market_id": self.chain_market_id,
            "before": self.before,
            "after": self.after,
        }


def _snapshot(market: Market) -> dict[str, str]:
    return {
        "yes_pool_size": str(_dec(market.yes_pool_size).normalize()),
        "no_pool_size": str(_dec(market.no_pool_size).normalize()),
        "total_pool_size": str(_dec(market.total_pool_size).normalize()),
        "volume": str(_dec(market.volume).normalize()),
        "count_yes": str(market.count_yes or 0),
        "count_no": str(market.count_no or 0),
        "total_yes_shares": str(_dec(market.total_yes_shares).normalize()),
        "total_no_shares": str(_dec(market.total_no_shares).normalize()),
    }


def pool_state_from_bets(session: Session, market_id: int) -> PoolState:
    """Aggregate every bet linked to ``market_id``, whatever its status.

    Summed in Python so wei-scale amounts stay exact on every backend.
    """

    rows = session.execute(
        select(Bet.position, Bet.amount, Bet.shares).where(Bet.market_id == market_id)
    ).all()
    state = PoolState()
    for position, amount, shares in rows:
        state.add(
            BetContribution(
                position=bool(position),
                amount=_dec(amount),
                shares=_dec(shares) if shares is not None else None,
            ),
            1,
        )
    return state


def recompute_market(session: Session, market: Market) -> MarketStatsRepair:
    """Rebuild a market's aggregates from its bets."""

    repair = MarketStatsRepair(
        market_id=market.id,
        chain_market_id=market.chain_market_id,
        before=_snapshot(market),
    )
    pool_state_from_bets(session, market.id).write(market)
    repair.after = _snapshot(market)
    if repair.changed:
        logger.warning(
            "Repaired drifted aggregates on market {}: {} -> {}",
            market.id,
            repair.before,
            repair.after,
        )
    return repair


def verify_market(session: Session, market: Market) -> list[str]:
    """Describe every way the stored aggregates disagree with the bet rows."""

    problems: list[str] = []
    yes = _dec(market.yes_pool_size)
    no = _dec(market.no_pool_size)
    total = _dec(market.total_pool_size)
    if total != yes + no:
        problems.append(f"total_pool_size {total} != yes {yes} + no {no}")
    if _dec(market.volume) != total:
        problems.append(f"volume {market.volume} != total_pool_size {total}")

    expected = pool_state_from_bets(session, market.id)
    for name, stored, computed in (
        ("yes_pool_size", yes, expected.yes_pool),
        ("no_pool_size", no, expected.no_pool),
        ("count_yes", market.count_yes, expected.count_yes),
        ("count_no", market.count_no, expected.count_no),
        ("total_yes_shares", _dec(market.total_yes_shares), expected.yes_shares),
        ("total_no_shares", _dec(market.total_no_shares), expected.no_shares),
    ):
        if stored != computed:
            problems.append(f"{name} {stored} != {computed} from bets")
    return problems


__all__ = [
    "BetContribution",
    "MarketStatsRepair",
    "PoolState",
    "apply_bet_changed",
    "apply_bet_created",
    "apply_bet_removed",
    "pool_state_from_bets",
    "recompute_market",
    "verify_market",
]
