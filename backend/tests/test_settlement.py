from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.errors import InvariantViolation
from app.models import BetStatus
from app.services.settlement import can_transition, ensure_transition, split_payout


def _bets(*weights):
    return [SimpleNamespace(amount=Decimal(amount), shares=shares) for amount, shares in weights]


def test_single_bet_takes_whole_claim():
    assert split_payout(Decimal("140"), _bets(("100", None))) == [Decimal("140")]


def test_split_is_proportional_to_amount_without_shares():
    parts = split_payout(Decimal("150"), _bets(("100", None), ("50", None)))
    assert parts == [Decimal("100"), Decimal("50")]
    assert sum(parts) == Decimal("150")


def test_split_prefers_shares_when_every_bet_has_them():
    parts = split_payout(
        Decimal("90"), _bets(("100", Decimal("1")), ("50", Decimal("2")))
    )
    assert parts == [Decimal("30"), Decimal("60")]


def test_split_remainder_goes_to_last_bet():
    parts = split_payout(Decimal("100"), _bets(("1", None), ("1", None), ("1", None)))
    assert parts[0] == parts[1] == Decimal("33.333333333333333333")
    assert sum(parts) == Decimal("100")


def test_split_is_even_when_weights_are_zero():
    assert split_payout(Decimal("10"), _bets(("0", None), ("0", None))) == [Decimal("5"), Decimal("5")]


def test_split_of_nothing_is_empty():
    assert split_payout(Decimal("10"), []) == []


@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        ("active", "won", True),
        ("active", "lost", True),
        ("active", "claimed", True),
        ("won", "claimed", True),
        ("lost", "claimed", False),
        ("claimed", "claimed", False),
        ("won", "lost", False),
        ("claimed", "active", False),
    ],
)
def test_bet_lifecycle_transitions(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_ensure_transition_raises_for_terminal_states():
    bet = SimpleNamespace(id=1, status=BetStatus.LOST.value)
    with pytest.raises(InvariantViolation):
        ensure_transition(bet, BetStatus.CLAIMED)
