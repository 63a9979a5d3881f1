"""Read-side queries over canonical markets and bets."""

from __future__ import annotations

from typing import Any

from sqlalchemy import asc, desc, func, select
from sqlalchemy.orm import Session

from app.models import Bet, Market, User

_MARKET_SORT_COLUMNS = {
    "id": Market.id,
    "end_date": Market.end_date,
    "volume": Market.volume,
    "created_at": Market.created_at,
}


class MarketRepository:
    """Queries consumed by the API layer; never mutates state."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Markets

    def get_market(self, market_id: int) -> Market | None:
        return self._session.get(Market, market_id)

    def get_market_by_chain_id(self, chain_market_id: str) -> Market | None:
        return self._session.scalars(
            select(Market).where(Market.chain_market_id == chain_market_id)
        ).first()

    def list_markets(
        self,
        *,
        status: str | None = None,
        sort: str = "id",
        order: str = "asc",
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Market], int]:
        filters: list[Any] = []
        if status:
            filters.append(Market.status == status)

        sort_column = _MARKET_SORT_COLUMNS.get(sort, Market.id)
        order_fn = desc if order == "desc" else asc

        query = select(Market).where(*filters).order_by(order_fn(sort_column), Market.id)
        total = self._session.scalar(select(func.count()).select_from(Market).where(*filters)) or 0
        markets = self._session.scalars(query.offset(offset).limit(limit)).all()
        return list(markets), int(total)

    # ------------------------------------------------------------------
    # Bets

    def list_bets(
        self,
        *,
        market_id: int | None = None,
        user_id: int | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Bet], int]:
        filters: list[Any] = []
        if market_id is not None:
            filters.append(Bet.market_id == market_id)
        if user_id is not None:
            filters.append(Bet.user_id == user_id)
        if status:
            filters.append(Bet.status == status)

        query = (
            select(Bet)
            .where(*filters)
            .order_by(Bet.block_number, Bet.log_index, Bet.id)
        )
        total = self._session.scalar(select(func.count()).select_from(Bet).where(*filters)) or 0
        bets = self._session.scalars(query.offset(offset).limit(limit)).all()
        return list(bets), int(total)

    # ------------------------------------------------------------------
    # Users

    def get_user_by_address(self, address: str) -> User | None:
        return self._session.scalars(
            select(User).where(User.address == address.strip().lower())
        ).first()


__all__ = ["MarketRepository"]
