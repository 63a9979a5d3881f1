from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from conftest import (
    ALICE,
    BOB,
    MARKET_CONTRACT,
    bet_placed,
    market_created,
    market_resolved,
    winnings_claimed,
)

from app.domain import EventType
from app.models import Bet, Market, ProcessingStatus
from app.repositories import AppendOutcome, MarketRepository, RawEventRepository
from app.services.aggregates import verify_market
from app.services.projector import Projector
from ingestion.projection import ProcessingOutcome
from ingestion.service import ingest_block_range


def _ingest(session_factory, service, *events, to_block: int):
    results = ingest_block_range(
        MARKET_CONTRACT,
        list(events),
        to_block=to_block,
        session_factory=session_factory,
    )
    return results, service.process_appended(results)


def _market(session, chain_market_id: str = "1") -> Market:
    return session.scalars(select(Market).where(Market.chain_market_id == chain_market_id)).one()


def _bets(session) -> dict[str, Bet]:
    return {bet.source_event_id: bet for bet in session.scalars(select(Bet))}


def _assert_consistent(session_factory, chain_market_id: str = "1") -> None:
    with session_factory() as session:
        market = _market(session, chain_market_id)
        assert verify_market(session, market) == []


def test_odds_are_fixed_from_pools_before_each_bet(session_factory, projection_service):
    _, reports = _ingest(
        session_factory,
        projection_service,
        ("MarketCreated", market_created("mc", 10)),
        ("BetPlaced", bet_placed("a", 11, user=ALICE, position=True, amount="100")),
        ("BetPlaced", bet_placed("b", 12, user=BOB, position=False, amount="50")),
        ("BetPlaced", bet_placed("c", 13, user=BOB, position=False, amount="25")),
        to_block=13,
    )

    assert [report.outcome for report in reports] == [ProcessingOutcome.PROCESSED] * 4
    with session_factory() as session:
        bets = _bets(session)
        assert bets["a"].odds == Decimal("1.00")
        assert bets["b"].odds == Decimal("1.00")
        assert bets["c"].odds == Decimal("3.00")

        market = _market(session)
        assert market.yes_pool_size == Decimal("100")
        assert market.no_pool_size == Decimal("75")
        assert market.total_pool_size == Decimal("175")
        assert market.volume == Decimal("175")
        assert (market.count_yes, market.count_no) == (1, 2)
    _assert_consistent(session_factory)


def test_redelivery_never_double_counts(session_factory, projection_service):
    results, _ = _ingest(
        session_factory,
        projection_service,
        ("MarketCreated", market_created("mc", 10)),
        ("BetPlaced", bet_placed("a", 11, user=ALICE, position=True, amount="100", betId="1")),
        to_block=11,
    )

    redelivered, reports = _ingest(
        session_factory,
        projection_service,
        ("BetPlaced", bet_placed("a", 11, user=ALICE, position=True, amount="100", betId="1")),
        ("MarketCreated", market_created("mc", 10)),
        to_block=11,
    )
    assert [result.outcome for result in redelivered] == [AppendOutcome.DUPLICATE_IGNORED] * 2
    assert reports == []

    # Re-running an applied row is a no-op.
    again = projection_service.process(EventType.BET_PLACED, results[1].row_id)
    assert again.outcome == ProcessingOutcome.SKIPPED

    # Same bet id under a different event key is recognised as the same bet.
    _, reports = _ingest(
        session_factory,
        projection_service,
        ("BetPlaced", bet_placed("a-replayed", 11, user=ALICE, position=True, amount="100", betId="1")),
        to_block=11,
    )
    assert reports[0].result.action == "bet_duplicate"

    with session_factory() as session:
        market = _market(session)
        assert market.yes_pool_size == Decimal("100")
        assert market.count_yes == 1
        assert len(_bets(session)) == 1
    _assert_consistent(session_factory)


def test_resolution_and_position_based_claim(session_factory, projection_service):
    _ingest(
        session_factory,
        projection_service,
        ("MarketCreated", market_created("mc", 10)),
        ("BetPlaced", bet_placed("a", 11, user=ALICE, position=True, amount="100")),
        ("BetPlaced", bet_placed("b", 12, user=BOB, position=False, amount="50")),
        to_block=12,
    )

    _, reports = _ingest(
        session_factory,
        projection_service,
        ("MarketResolved", market_resolved("r", 20, outcome=True)),
        to_block=20,
    )
    assert reports[0].result.action == "market_resolved"
    assert reports[0].result.bets_affected == 2
    with session_factory() as session:
        market = _market(session)
        assert market.status == "resolved"
        assert market.result is True
        assert market.resolution_date is not None
        bets = _bets(session)
        assert (bets["a"].status, bets["b"].status) == ("won", "lost")
    _assert_consistent(session_factory)

    _, reports = _ingest(
        session_factory,
        projection_service,
        ("WinningsClaimed", winnings_claimed("claim-a", 21, user=ALICE, amount="140")),
        ("WinningsClaimed", winnings_claimed("claim-b", 22, user=BOB, amount="1")),
        to_block=22,
    )
    assert [report.result.action for report in reports] == ["winnings_claimed", "claim_ignored"]
    with session_factory() as session:
        bets = _bets(session)
        assert bets["a"].status == "claimed"
        assert bets["a"].payout == Decimal("140")
        assert bets["a"].claimed_at is not None
        assert bets["b"].status == "lost"
        assert bets["b"].payout is None
        market = _market(session)
        assert market.yes_pool_size == Decimal("100")
        assert market.no_pool_size == Decimal("50")
    _assert_consistent(session_factory)

    redelivered, reports = _ingest(
        session_factory,
        projection_service,
        ("WinningsClaimed", winnings_claimed("claim-a", 21, user=ALICE, amount="140")),
        ("WinningsClaimed", winnings_claimed("claim-a-again", 23, user=ALICE, amount="140")),
        to_block=23,
    )
    assert redelivered[0].outcome == AppendOutcome.DUPLICATE_IGNORED
    assert [report.result.action for report in reports] == ["claim_ignored"]
    with session_factory() as session:
        assert _bets(session)["a"].payout == Decimal("140")


def test_resolution_leaves_claimed_bets_alone(session_factory, projection_service):
    _, reports = _ingest(
        session_factory,
        projection_service,
        ("MarketCreated", market_created("mc", 10)),
        ("BetPlaced", bet_placed("a", 11, user=ALICE, position=False, amount="10", betId="1")),
        ("BetPlaced", bet_placed("b", 12, user=BOB, position=True, amount="10", betId="2")),
        ("WinningsClaimed", winnings_claimed("early", 13, user=ALICE, amount="4", market_id=None, betId="1")),
        ("MarketResolved", market_resolved("r", 14, outcome=True)),
        to_block=14,
    )

    assert reports[-1].result.bets_affected == 1
    with session_factory() as session:
        bets = _bets(session)
        assert (bets["a"].status, bets["a"].payout) == ("claimed", Decimal("4"))
        assert bets["b"].status == "won"
    _assert_consistent(session_factory)


def test_repeated_and_conflicting_resolutions(session_factory, projection_service):
    _ingest(
        session_factory,
        projection_service,
        ("MarketCreated", market_created("mc", 10)),
        ("MarketResolved", market_resolved("r1", 20, outcome=False)),
        to_block=20,
    )

    _, reports = _ingest(
        session_factory,
        projection_service,
        ("MarketResolved", market_resolved("r2", 21, outcome=False)),
        ("MarketResolved", market_resolved("r3", 22, outcome=True)),
        to_block=22,
    )

    assert reports[0].result.action == "market_already_resolved"
    assert reports[1].outcome == ProcessingOutcome.QUARANTINED
    with session_factory() as session:
        assert _market(session).result is False
        row = RawEventRepository(session).get(EventType.MARKET_RESOLVED, reports[1].row_id)
        assert row.processing_status == ProcessingStatus.QUARANTINED.value
        assert "conflicting" in row.last_error


def test_legacy_claim_by_bet_id(session_factory, projection_service):
    _ingest(
        session_factory,
        projection_service,
        ("MarketCreated", market_created("mc", 10)),
        ("BetPlaced", bet_placed("a", 11, user=ALICE, position=True, amount="10", betId="7")),
        ("MarketResolved", market_resolved("r", 12, outcome=True)),
        to_block=12,
    )

    _, reports = _ingest(
        session_factory,
        projection_service,
        ("WinningsClaimed", winnings_claimed("stolen", 13, user=BOB, amount="10", market_id=None, betId="7")),
        ("WinningsClaimed", winnings_claimed("claim", 14, user=ALICE, amount="10", market_id=None, betId="7")),
        to_block=14,
    )

    assert reports[0].outcome == ProcessingOutcome.QUARANTINED
    assert reports[1].result.action == "winnings_claimed"
    with session_factory() as session:
        bet = _bets(session)["a"]
        assert bet.status == "claimed"
        assert bet.payout == Decimal("10")


def test_bets_seen_before_their_market_are_linked_in_chain_order(session_factory, projection_service):
    _, reports = _ingest(
        session_factory,
        projection_service,
        ("BetPlaced", bet_placed("c", 6, user=BOB, position=False, amount="25")),
        ("BetPlaced", bet_placed("a", 5, user=ALICE, position=True, amount="100")),
        ("BetPlaced", bet_placed("b", 5, user=BOB, position=False, amount="50", log_index=3)),
        to_block=6,
    )
    assert {report.result.action for report in reports} == {"bet_unlinked"}
    with session_factory() as session:
        assert all(bet.market_id is None and bet.odds is None for bet in _bets(session).values())

    _, reports = _ingest(
        session_factory,
        projection_service,
        ("MarketCreated", market_created("mc", 4)),
        to_block=6,
    )

    assert reports[0].result.action == "market_created"
    assert reports[0].result.bets_affected == 3
    with session_factory() as session:
        bets = _bets(session)
        assert [bets[key].odds for key in ("a", "b", "c")] == [
            Decimal("1.00"),
            Decimal("1.00"),
            Decimal("3.00"),
        ]
        market = _market(session)
        assert {bet.market_id for bet in bets.values()} == {market.id}
        assert market.total_pool_size == Decimal("175")
    _assert_consistent(session_factory)


def test_unresolved_market_is_deferred_then_applied(session_factory, projection_service):
    results, reports = _ingest(
        session_factory,
        projection_service,
        ("MarketResolved", market_resolved("r", 20, outcome=True, market_id="9")),
        to_block=20,
    )
    assert reports[0].outcome == ProcessingOutcome.DEFERRED
    with session_factory() as session:
        row = RawEventRepository(session).get(EventType.MARKET_RESOLVED, results[0].row_id)
        assert row.processing_status == ProcessingStatus.DEFERRED.value
        assert row.attempts == 1

    _ingest(
        session_factory,
        projection_service,
        ("MarketCreated", market_created("mc", 10, market_id="9")),
        to_block=20,
    )
    report = projection_service.process(EventType.MARKET_RESOLVED, results[0].row_id)

    assert report.outcome == ProcessingOutcome.PROCESSED
    with session_factory() as session:
        assert _market(session, "9").status == "resolved"


def test_vault_market_tracks_shares_and_rebalances(session_factory, projection_service):
    vault = "0x00000000000000000000000000000000000000bb"
    _ingest(
        session_factory,
        projection_service,
        ("MarketCreated", market_created("mc", 10, vaultAddress=vault)),
        ("BetPlaced", bet_placed("a", 11, user=ALICE, position=True, amount="100", shares="95")),
        ("BetPlaced", bet_placed("b", 12, user=BOB, position=False, amount="40", shares="38")),
        ("MarketVaultRebalanced", {**market_created("rb1", 13), "amount": "30"}),
        ("MarketVaultRebalanced", {**market_created("rb2", 14), "amount": "12"}),
        to_block=14,
    )

    with session_factory() as session:
        market = _market(session)
        assert market.vault_address == vault
        assert market.total_yes_shares == Decimal("95")
        assert market.total_no_shares == Decimal("38")
        assert market.rebalance_count == 2
        assert market.total_rebalanced_amount == Decimal("42")
        assert market.last_rebalanced_at is not None
    _assert_consistent(session_factory)


def test_lock_contention_is_retried_then_deferred(session_factory, test_settings, monkeypatch):
    from app.services.locks import MarketLockRegistry
    from ingestion.projection import ProjectionService

    delays: list[float] = []
    service = ProjectionService(
        test_settings,
        session_factory=session_factory,
        locks=MarketLockRegistry(),
        sleep=delays.append,
    )
    results = ingest_block_range(
        MARKET_CONTRACT,
        [("MarketCreated", market_created("mc", 10))],
        to_block=10,
        session_factory=session_factory,
    )

    def _locked(self, row):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    monkeypatch.setattr(Projector, "apply", _locked)
    report = service.process(EventType.MARKET_CREATED, results[0].row_id)

    assert report.outcome == ProcessingOutcome.DEFERRED
    assert "database is locked" in report.error
    assert delays == [0.01, 0.02]
    with session_factory() as session:
        row = RawEventRepository(session).get(EventType.MARKET_CREATED, results[0].row_id)
        assert row.processing_status == ProcessingStatus.DEFERRED.value


def test_wei_amounts_are_stored_exactly(session_factory, projection_service):
    wei = "1234567890123456789"
    _ingest(
        session_factory,
        projection_service,
        ("MarketCreated", market_created("mc", 10)),
        ("BetPlaced", bet_placed("a", 11, user=ALICE, position=True, amount=wei)),
        ("BetPlaced", bet_placed("b", 12, user=BOB, position=True, amount="1")),
        ("BetPlaced", bet_placed("c", 13, user=BOB, position=False, amount="0.000000000000000001")),
        ("MarketCreated", market_created("mc2", 14, market_id="2")),
        ("BetPlaced", bet_placed("d", 15, user=ALICE, position=True, amount="9", market_id="2")),
        to_block=15,
    )

    with session_factory() as session:
        bets = _bets(session)
        assert bets["a"].amount == Decimal(wei)
        assert bets["c"].amount == Decimal("1e-18")
        market = _market(session)
        assert market.yes_pool_size == Decimal("1234567890123456790")
        assert market.volume == Decimal("1234567890123456790.000000000000000001")

        by_volume, _ = MarketRepository(session).list_markets(sort="volume", order="desc")
        assert [item.chain_market_id for item in by_volume] == ["1", "2"]
    _assert_consistent(session_factory)
