from __future__ import annotations

from decimal import Decimal

import pytest

from app.errors import InvariantViolation
from app.models import Bet, Market, User
from app.services import aggregates
from app.services.aggregates import BetContribution


def _market() -> Market:
    return Market(
        chain_market_id="1",
        question="Test?",
        yes_pool_size=Decimal("0"),
        no_pool_size=Decimal("0"),
        total_pool_size=Decimal("0"),
        volume=Decimal("0"),
        count_yes=0,
        count_no=0,
        total_yes_shares=Decimal("0"),
        total_no_shares=Decimal("0"),
    )


def _bet(position: bool, amount: str, shares: str | None = None, source: str = "e1") -> Bet:
    return Bet(
        source_event_id=source,
        chain_market_id="1",
        position=position,
        amount=Decimal(amount),
        shares=Decimal(shares) if shares is not None else None,
        block_number=1,
        log_index=0,
        transaction_hash="0x1",
    )


def test_bet_created_adds_to_its_side_and_derives_totals():
    market = _market()
    aggregates.apply_bet_created(market, _bet(True, "100", shares="90"))
    aggregates.apply_bet_created(market, _bet(False, "50", source="e2"))

    assert market.yes_pool_size == Decimal("100")
    assert market.no_pool_size == Decimal("50")
    assert market.total_pool_size == Decimal("150")
    assert market.volume == Decimal("150")
    assert (market.count_yes, market.count_no) == (1, 1)
    assert market.total_yes_shares == Decimal("90")
    assert market.total_no_shares == Decimal("0")


def test_bet_changed_applies_compensating_delta():
    market = _market()
    bet = _bet(True, "100")
    aggregates.apply_bet_created(market, bet)
    previous = BetContribution.of(bet)

    bet.position = False
    bet.amount = Decimal("40")
    aggregates.apply_bet_changed(market, previous, bet)

    assert market.yes_pool_size == Decimal("0")
    assert market.no_pool_size == Decimal("40")
    assert (market.count_yes, market.count_no) == (0, 1)
    assert market.total_pool_size == Decimal("40")


def test_removing_unknown_bet_refuses_negative_pools():
    market = _market()
    with pytest.raises(InvariantViolation):
        aggregates.apply_bet_removed(market, _bet(True, "10"))
    assert market.yes_pool_size == Decimal("0")
    assert market.count_yes == 0


def test_negative_amount_is_rejected():
    with pytest.raises(InvariantViolation):
        aggregates.apply_bet_created(_market(), _bet(True, "-1"))


def _persist_market_with_bets(session) -> Market:
    user = User(address="0xabc")
    market = _market()
    session.add_all([user, market])
    session.flush()
    for index, (position, amount) in enumerate([(True, "100"), (False, "50"), (True, "25")]):
        bet = _bet(position, amount, source=f"e{index}")
        bet.user_id = user.id
        bet.log_index = index
        bet.market = market
        session.add(bet)
        aggregates.apply_bet_created(market, bet)
    session.flush()
    return market


def test_verify_market_reports_drift_and_recompute_fixes_it(session):
    market = _persist_market_with_bets(session)
    assert aggregates.verify_market(session, market) == []

    market.yes_pool_size = Decimal("1")
    market.count_no = 7
    problems = aggregates.verify_market(session, market)
    assert any(problem.startswith("total_pool_size") for problem in problems)
    assert any(problem.startswith("yes_pool_size") for problem in problems)
    assert any(problem.startswith("count_no") for problem in problems)

    repair = aggregates.recompute_market(session, market)
    assert repair.changed
    assert market.yes_pool_size == Decimal("125")
    assert market.count_no == 1
    assert market.volume == Decimal("175")
    assert aggregates.verify_market(session, market) == []


def test_recompute_on_consistent_market_is_a_no_op(session):
    market = _persist_market_with_bets(session)
    repair = aggregates.recompute_market(session, market)
    assert not repair.changed
