"""Apply typed chain events to canonical users, markets and bets.

The projector runs inside the caller's transaction and never commits. Callers
wrap one event per transaction so a projection lands entirely or not at all.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.domain import (
    BetPlaced,
    ChainEvent,
    EventType,
    MarketCreated,
    MarketResolved,
    MarketVaultRebalanced,
    WinningsClaimed,
)
from app.errors import UnresolvedMarketReference
from app.models import Bet, BetStatus, Market, MarketStatus, ProcessingStatus, RawEventMixin
from app.repositories import EntityResolver, RawEventRepository

from . import aggregates
from .locks import advisory_lock_id, market_lock_key
from .odds import compute_odds
from .settlement import SettlementEngine

_FINAL_STATUSES = (ProcessingStatus.PROCESSED.value, ProcessingStatus.QUARANTINED.value)


@dataclass(slots=True)
class ProjectionResult:
    event_type: EventType
    chain_event_id: str
    action: str
    market_id: int | None = None
    bets_affected: int = 0


class Projector:
    """One handler per event type, dispatched on ``event.event_type``."""

    def __init__(self, session: Session) -> None:
        self._session = session
        self._resolver = EntityResolver(session)
        self._settlement = SettlementEngine(session)
        self._raw_events = RawEventRepository(session)
        self._handlers: dict[EventType, Callable[..., ProjectionResult]] = {
            EventType.MARKET_CREATED: self._project_market_created,
            EventType.BET_PLACED: self._project_bet_placed,
            EventType.MARKET_RESOLVED: self._project_market_resolved,
            EventType.WINNINGS_CLAIMED: self._project_winnings_claimed,
            EventType.MARKET_VAULT_REBALANCED: self._project_vault_rebalanced,
        }

    @property
    def resolver(self) -> EntityResolver:
        return self._resolver

    def project(self, event: ChainEvent) -> ProjectionResult:
        handler = self._handlers[event.event_type]
        self._lock_market(getattr(event, "chain_market_id", None))
        result = handler(event)
        self._session.flush()
        logger.debug(
            "Projected {} {} -> {} (market={}, bets={})",
            event.event_type.value,
            event.chain_event_id,
            result.action,
            result.market_id,
            result.bets_affected,
        )
        return result

    def apply(self, row: RawEventMixin) -> ProjectionResult | None:
        """Project a stored raw event at most once and mark it processed.

        Returns ``None`` when the row was already applied or quarantined.
        """

        if row.processing_status in _FINAL_STATUSES:
            logger.debug(
                "Skipping {} {} in status {}",
                row.event_type.value,
                row.chain_event_id,
                row.processing_status,
            )
            return None
        result = self.project(row.to_domain())
        self._raw_events.mark_processed(row)
        return result

    # ------------------------------------------------------------------
    # Markets

    def _project_market_created(self, event: MarketCreated) -> ProjectionResult:
        market = self._resolver.get_market(event.chain_market_id, for_update=True)
        if market is None:
            market = self._insert_market(event)
            if market is not None:
                linked = self._link_orphan_bets(market)
                return ProjectionResult(
                    event_type=event.event_type,
                    chain_event_id=event.chain_event_id,
                    action="market_created",
                    market_id=market.id,
                    bets_affected=linked,
                )
            market = self._resolver.get_market(event.chain_market_id, for_update=True)

        # Repeated creation only refreshes descriptive fields; aggregates stay put.
        if event.vault_address:
            market.vault_address = event.vault_address
        if event.end_date is not None:
            market.end_date = event.end_date
        return ProjectionResult(
            event_type=event.event_type,
            chain_event_id=event.chain_event_id,
            action="market_updated",
            market_id=market.id,
        )

    def _insert_market(self, event: MarketCreated) -> Market | None:
        market = Market(
            chain_market_id=event.chain_market_id,
            question=event.question,
            end_date=event.end_date,
            status=MarketStatus.ACTIVE.value,
            vault_address=event.vault_address,
        )
        try:
            with self._session.begin_nested():
                self._session.add(market)
                self._session.flush()
        except IntegrityError:
            logger.info("Market {} created concurrently; updating instead", event.chain_market_id)
            return None
        logger.info("Created market {} ({})", market.id, event.chain_market_id)
        return market

    def _link_orphan_bets(self, market: Market) -> int:
        orphans = self._session.scalars(
            select(Bet)
            .where(Bet.market_id.is_(None), Bet.chain_market_id == market.chain_market_id)
            .order_by(Bet.block_number, Bet.log_index, Bet.id)
        ).all()
        for bet in orphans:
            self._attach_bet(market, bet)
        if orphans:
            logger.info(
                "Linked {} bets placed before market {} was projected",
                len(orphans),
                market.chain_market_id,
            )
        return len(orphans)

    def orphaned_market_ids(self) -> list[str]:
        """Chain market ids with unlinked bets whose market now exists."""

        return list(
            self._session.scalars(
                select(Bet.chain_market_id)
                .where(
                    Bet.market_id.is_(None),
                    Bet.chain_market_id.in_(select(Market.chain_market_id)),
                )
                .distinct()
                .order_by(Bet.chain_market_id)
            )
        )

    def link_orphans(self, chain_market_id: str) -> int:
        """Attach bets that were stored unlinked after their market was created.

        Covers a bet committed by another worker between the market insert and
        its orphan scan.
        """

        self._lock_market(chain_market_id)
        market = self._resolver.get_market(chain_market_id, for_update=True)
        if market is None:
            return 0
        linked = self._link_orphan_bets(market)
        self._session.flush()
        return linked

    def _project_vault_rebalanced(self, event: MarketVaultRebalanced) -> ProjectionResult:
        market = self._require_market(event.chain_market_id, event)
        market.rebalance_count = (market.rebalance_count or 0) + 1
        market.total_rebalanced_amount = (market.total_rebalanced_amount or 0) + event.amount
        market.last_rebalanced_at = event.block_timestamp
        return ProjectionResult(
            event_type=event.event_type,
            chain_event_id=event.chain_event_id,
            action="vault_rebalanced",
            market_id=market.id,
        )

    # ------------------------------------------------------------------
    # Bets

    def _project_bet_placed(self, event: BetPlaced) -> ProjectionResult:
        existing = self._resolver.get_bet_by_source_event(event.chain_event_id)
        if existing is None and event.has_explicit_bet_id:
            existing = self._resolver.get_bet_by_chain_id(event.chain_bet_id)
        if existing is not None:
            logger.warning(
                "Bet {} already recorded from event {}; ignoring {}",
                existing.id,
                existing.source_event_id,
                event.chain_event_id,
            )
            return ProjectionResult(
                event_type=event.event_type,
                chain_event_id=event.chain_event_id,
                action="bet_duplicate",
                market_id=existing.market_id,
            )

        user_id = self._resolver.resolve_user(event.user_address)
        market = self._resolver.get_market(event.chain_market_id, for_update=True)

        bet = Bet(
            chain_bet_id=event.chain_bet_id,
            source_event_id=event.chain_event_id,
            user_id=user_id,
            chain_market_id=event.chain_market_id,
            position=event.position,
            amount=event.amount,
            shares=event.shares,
            status=BetStatus.ACTIVE.value,
            block_number=event.block_number,
            log_index=event.log_index,
            transaction_hash=event.transaction_hash,
            placed_at=event.block_timestamp,
        )
        self._session.add(bet)

        if market is None:
            logger.warning(
                "Bet {} references market {} which is not projected yet; stored unlinked",
                event.chain_event_id,
                event.chain_market_id,
            )
            return ProjectionResult(
                event_type=event.event_type,
                chain_event_id=event.chain_event_id,
                action="bet_unlinked",
            )

        self._attach_bet(market, bet)
        return ProjectionResult(
            event_type=event.event_type,
            chain_event_id=event.chain_event_id,
            action="bet_placed",
            market_id=market.id,
            bets_affected=1,
        )

    def _attach_bet(self, market: Market, bet: Bet) -> None:
        # Odds come from the pools before this bet; the add delta follows.
        bet.odds = compute_odds(bet.position, market.yes_pool_size, market.no_pool_size)
        bet.market = market
        aggregates.apply_bet_created(market, bet)

    # ------------------------------------------------------------------
    # Settlement

    def _project_market_resolved(self, event: MarketResolved) -> ProjectionResult:
        market = self._require_market(event.chain_market_id, event)
        outcome = self._settlement.resolve_market(market, event)
        return ProjectionResult(
            event_type=event.event_type,
            chain_event_id=event.chain_event_id,
            action="market_already_resolved" if outcome.already_resolved else "market_resolved",
            market_id=market.id,
            bets_affected=outcome.reclassified,
        )

    def _project_winnings_claimed(self, event: WinningsClaimed) -> ProjectionResult:
        user_id = self._resolver.resolve_user(event.user_address)
        market = None
        if event.chain_market_id is not None:
            market = self._resolver.get_market(event.chain_market_id, for_update=True)
        outcome = self._settlement.settle_claim(event, user_id=user_id, market=market)
        return ProjectionResult(
            event_type=event.event_type,
            chain_event_id=event.chain_event_id,
            action="winnings_claimed" if outcome.claimed else "claim_ignored",
            market_id=market.id if market is not None else None,
            bets_affected=outcome.claimed,
        )

    def _lock_market(self, chain_market_id: str | None) -> None:
        # Row locks cannot cover a market row that does not exist yet.
        if chain_market_id is None or self._session.get_bind().dialect.name != "postgresql":
            return
        lock_id = advisory_lock_id(market_lock_key(chain_market_id))
        self._session.execute(select(func.pg_advisory_xact_lock(lock_id)))

    def _require_market(self, chain_market_id: str, event: ChainEvent) -> Market:
        market = self._resolver.get_market(chain_market_id, for_update=True)
        if market is None:
            raise UnresolvedMarketReference(
                f"{event.event_type.value} {event.chain_event_id} references unknown market {chain_market_id}"
            )
        return market


__all__ = ["ProjectionResult", "Projector"]
