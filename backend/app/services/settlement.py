"""Market resolution and winnings claims."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal, localcontext
from typing import Sequence

from loguru import logger
from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from app.domain import MarketResolved, WinningsClaimed
from app.errors import InvariantViolation, UnresolvedMarketReference
from app.models import Bet, BetStatus, Market, MarketStatus

PAYOUT_QUANTUM = Decimal("1e-18")

# active -> won/lost on resolution; active/won -> claimed on claim.
BET_TRANSITIONS: dict[BetStatus, frozenset[BetStatus]] = {
    BetStatus.ACTIVE: frozenset({BetStatus.WON, BetStatus.LOST, BetStatus.CLAIMED}),
    BetStatus.WON: frozenset({BetStatus.CLAIMED}),
    BetStatus.LOST: frozenset(),
    BetStatus.CLAIMED: frozenset(),
}
CLAIMABLE_STATUSES = (BetStatus.ACTIVE.value, BetStatus.WON.value)


def can_transition(current: str | BetStatus, target: str | BetStatus) -> bool:
    return BetStatus(target) in BET_TRANSITIONS[BetStatus(current)]


def ensure_transition(bet: Bet, target: BetStatus) -> None:
    if not can_transition(bet.status, target):
        raise InvariantViolation(
            f"Bet {bet.id} cannot move from {bet.status} to {target.value}"
        )


def split_payout(total: Decimal, bets: Sequence[Bet]) -> list[Decimal]:
    """Divide one claimed amount across the bets it settles.

    Weights are vault shares when every bet has them, otherwise staked
    amounts; with no usable weight the split is even. Each share is rounded
    down to 18 places and the last bet absorbs the remainder, so the parts
    always sum to ``total``.
    """

    if not bets:
        return []
    if len(bets) == 1:
        return [total]

    if all(bet.shares is not None for bet in bets):
        weights = [Decimal(bet.shares) for bet in bets]
    else:
        weights = [Decimal(bet.amount or 0) for bet in bets]
    weight_total = sum(weights, Decimal("0"))
    if weight_total <= 0:
        weights = [Decimal("1")] * len(bets)
        weight_total = Decimal(len(bets))

    parts: list[Decimal] = []
    allocated = Decimal("0")
    # Wei-scale amounts at 18 places exceed the default 28-digit context.
    with localcontext() as ctx:
        ctx.prec = 60
        for weight in weights[:-1]:
            part = (total * weight / weight_total).quantize(PAYOUT_QUANTUM, rounding=ROUND_DOWN)
            parts.append(part)
            allocated += part
        parts.append(total - allocated)
    return parts


@dataclass(slots=True)
class ResolutionOutcome:
    market_id: int
    outcome: bool
    reclassified: int = 0
    already_resolved: bool = False


@dataclass(slots=True)
class ClaimOutcome:
    claimed_bet_ids: list[int] = field(default_factory=list)
    skipped_bet_ids: list[int] = field(default_factory=list)
    payout_total: Decimal = Decimal("0")

    @property
    def claimed(self) -> int:
        return len(self.claimed_bet_ids)


class SettlementEngine:
    """Apply lifecycle transitions to markets and bets inside the caller's transaction."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def resolve_market(self, market: Market, event: MarketResolved) -> ResolutionOutcome:
        if market.status == MarketStatus.RESOLVED.value:
            if market.result is not None and market.result != event.outcome:
                raise InvariantViolation(
                    f"Market {market.chain_market_id} already resolved to {market.result}; "
                    f"refusing conflicting outcome {event.outcome}"
                )
            logger.info("Market {} already resolved; skipping", market.chain_market_id)
            return ResolutionOutcome(market_id=market.id, outcome=event.outcome, already_resolved=True)

        market.status = MarketStatus.RESOLVED.value
        market.result = event.outcome
        market.resolution_date = event.block_timestamp
        market.resolution_tx_hash = event.transaction_hash

        active = (Bet.market_id == market.id, Bet.status == BetStatus.ACTIVE.value)
        reclassified = self._session.scalar(select(func.count(Bet.id)).where(*active)) or 0

        # One statement so no reader sees a half-reclassified market.
        statement = (
            update(Bet)
            .where(*active)
            .values(
                status=case(
                    (Bet.position == event.outcome, BetStatus.WON.value),
                    else_=BetStatus.LOST.value,
                )
            )
            .execution_options(synchronize_session="fetch")
        )
        self._session.execute(statement)
        logger.info(
            "Resolved market {} to {}; reclassified {} active bets",
            market.chain_market_id,
            "YES" if event.outcome else "NO",
            reclassified,
        )
        return ResolutionOutcome(market_id=market.id, outcome=event.outcome, reclassified=reclassified)

    def settle_claim(
        self,
        event: WinningsClaimed,
        *,
        user_id: int,
        market: Market | None,
    ) -> ClaimOutcome:
        if event.has_explicit_bet_id:
            candidates = self._bets_by_chain_id(event, user_id)
        else:
            if market is None:
                raise UnresolvedMarketReference(
                    f"Claim {event.chain_event_id} references unknown market {event.chain_market_id}"
                )
            candidates = self._claimable_bets(user_id, market.id)

        outcome = ClaimOutcome()
        eligible: list[Bet] = []
        for bet in candidates:
            if bet.status in CLAIMABLE_STATUSES:
                eligible.append(bet)
            else:
                outcome.skipped_bet_ids.append(bet.id)
                logger.warning(
                    "Ignoring claim {} for bet {} in status {}",
                    event.chain_event_id,
                    bet.id,
                    bet.status,
                )

        if not eligible:
            logger.info("Claim {} matched no claimable bets", event.chain_event_id)
            return outcome

        for bet, payout in zip(eligible, split_payout(event.winning_amount, eligible)):
            ensure_transition(bet, BetStatus.CLAIMED)
            bet.status = BetStatus.CLAIMED.value
            bet.payout = payout
            bet.claimed_at = event.block_timestamp
            outcome.claimed_bet_ids.append(bet.id)
            outcome.payout_total += payout
        return outcome

    def _bets_by_chain_id(self, event: WinningsClaimed, user_id: int) -> list[Bet]:
        bet = self._session.scalars(
            select(Bet).where(Bet.chain_bet_id == event.chain_bet_id).with_for_update()
        ).first()
        if bet is None:
            raise UnresolvedMarketReference(
                f"Claim {event.chain_event_id} references unknown bet {event.chain_bet_id}"
            )
        if bet.user_id != user_id:
            raise InvariantViolation(
                f"Claim {event.chain_event_id} for bet {event.chain_bet_id} comes from a different user"
            )
        return [bet]

    def _claimable_bets(self, user_id: int, market_id: int) -> list[Bet]:
        return list(
            self._session.scalars(
                select(Bet)
                .where(
                    Bet.user_id == user_id,
                    Bet.market_id == market_id,
                    Bet.status.in_(CLAIMABLE_STATUSES),
                )
                .order_by(Bet.block_number, Bet.log_index, Bet.id)
                .with_for_update()
            )
        )


__all__ = [
    "BET_TRANSITIONS",
    "ClaimOutcome",
    "ResolutionOutcome",
    "SettlementEngine",
    "can_transition",
    "ensure_transition",
    "split_payout",
]
