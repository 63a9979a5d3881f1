"""Map chain-native identifiers onto canonical user and market rows."""

from __future__ import annotations

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import Bet, Market, User


def normalize_address(address: str) -> str:
    return address.strip().lower()


class EntityResolver:
    """Resolve users and markets for the projector.

    Users are created lazily on first sight. Creation relies on the unique
    constraint on ``users.address``: the insert runs in a savepoint and a
    uniqueness violation means another transaction won, so the row is fetched.
    """

    def __init__(self, session: Session) -> None:
        self._session = session
        self._user_ids: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Users

    def resolve_user(self, address: str) -> int:
        normalized = normalize_address(address)
        cached = self._user_ids.get(normalized)
        if cached is not None:
            return cached

        user_id = self._find_user_id(normalized)
        if user_id is None:
            user_id = self._insert_or_fetch_user(normalized)
        self._user_ids[normalized] = user_id
        return user_id

    def _insert_or_fetch_user(self, address: str) -> int:
        user = User(address=address)
        try:
            with self._session.begin_nested():
                self._session.add(user)
                self._session.flush()
        except IntegrityError:
            user_id = self._find_user_id(address)
            if user_id is None:
                raise
            logger.debug("User {} was created concurrently; reusing id {}", address, user_id)
            return user_id
        logger.debug("Created user {} for address {}", user.id, address)
        return user.id

    def _find_user_id(self, address: str) -> int | None:
        return self._session.scalar(select(User.id).where(User.address == address))

    def get_user(self, address: str) -> User | None:
        return self._session.scalars(
            select(User).where(User.address == normalize_address(address))
        ).first()

    # ------------------------------------------------------------------
    # Markets

    def resolve_market(self, chain_market_id: str) -> int | None:
        """Return the canonical market id, or ``None`` when not projected yet."""

        return self._session.scalar(
            select(Market.id).where(Market.chain_market_id == chain_market_id)
        )

    def get_market(self, chain_market_id: str, *, for_update: bool = False) -> Market | None:
        query = select(Market).where(Market.chain_market_id == chain_market_id)
        if for_update:
            query = query.with_for_update()
        return self._session.scalars(query).first()

    def get_market_by_id(self, market_id: int, *, for_update: bool = False) -> Market | None:
        query = select(Market).where(Market.id == market_id)
        if for_update:
            query = query.with_for_update()
        return self._session.scalars(query).first()

    # ------------------------------------------------------------------
    # Bets

    def get_bet_by_chain_id(self, chain_bet_id: str, *, for_update: bool = False) -> Bet | None:
        query = select(Bet).where(Bet.chain_bet_id == chain_bet_id)
        if for_update:
            query = query.with_for_update()
        return self._session.scalars(query).first()

    def get_bet_by_source_event(self, source_event_id: str) -> Bet | None:
        return self._session.scalars(
            select(Bet).where(Bet.source_event_id == source_event_id)
        ).first()


__all__ = ["EntityResolver", "normalize_address"]
