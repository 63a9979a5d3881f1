"""Read-only conveniences over projected markets, bets, users and cursors."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from sqlalchemy.orm import Session

from app.repositories import MarketRepository, SyncCursorRepository
from app.schemas import Bet, Market, SyncCursor, User


@dataclass(slots=True)
class MarketQuery:
    status: str | None = None
    sort: str = "id"
    order: str = "asc"
    limit: int = 50
    offset: int = 0

    def to_repository_kwargs(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "sort": self.sort,
            "order": self.order,
            "limit": self.limit,
            "offset": self.offset,
        }


@dataclass(slots=True)
class MarketQueryResult:
    total: int
    markets: Sequence[Market]


@dataclass(slots=True)
class BetQueryResult:
    total: int
    bets: Sequence[Bet]


class MarketService:
    """Read-only facade used by the API; reflects the last committed projection."""

    def __init__(self, session: Session):
        self._session = session
        self._market_repo = MarketRepository(session)
        self._cursor_repo = SyncCursorRepository(session)

    def list_markets(self, query: MarketQuery) -> MarketQueryResult:
        records, total = self._market_repo.list_markets(**query.to_repository_kwargs())
        return MarketQueryResult(
            total=total,
            markets=[Market.model_validate(record) for record in records],
        )

    def get_market(self, market_id: int) -> Market | None:
        market = self._market_repo.get_market(market_id)
        return Market.model_validate(market) if market else None

    def get_market_by_chain_id(self, chain_market_id: str) -> Market | None:
        market = self._market_repo.get_market_by_chain_id(chain_market_id)
        return Market.model_validate(market) if market else None

    def list_market_bets(
        self,
        market_id: int,
        *,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> BetQueryResult | None:
        if self._market_repo.get_market(market_id) is None:
            return None
        bets, total = self._market_repo.list_bets(
            market_id=market_id, status=status, limit=limit, offset=offset
        )
        return BetQueryResult(total=total, bets=[Bet.model_validate(bet) for bet in bets])

    def get_user(self, address: str) -> User | None:
        user = self._market_repo.get_user_by_address(address)
        return User.model_validate(user) if user else None

    def list_user_bets(
        self,
        address: str,
        *,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> BetQueryResult | None:
        user = self._market_repo.get_user_by_address(address)
        if user is None:
            return None
        bets, total = self._market_repo.list_bets(
            user_id=user.id, status=status, limit=limit, offset=offset
        )
        return BetQueryResult(total=total, bets=[Bet.model_validate(bet) for bet in bets])

    def list_sync_cursors(self) -> list[SyncCursor]:
        return [SyncCursor.model_validate(cursor) for cursor in self._cursor_repo.list_cursors()]
