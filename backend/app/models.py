from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, localcontext
from enum import Enum
from typing import ClassVar

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base
from .domain import (
    BetPlaced,
    ChainEvent,
    EventType,
    MarketCreated,
    MarketResolved,
    MarketVaultRebalanced,
    WinningsClaimed,
)

AMOUNT_QUANTUM = Decimal("1e-18")


class ChainAmount(TypeDecorator):
    """``NUMERIC(38, 18)`` that keeps every wei on SQLite too.

    pysqlite hands ``NUMERIC`` values to SQLite as floats, which keep only
    about 16 significant digits. There the value is stored as zero-padded
    fixed-point text instead, so it round-trips exactly and non-negative
    amounts still sort correctly.
    """

    impl = Numeric
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(48))
        return super().load_dialect_impl(dialect)

    def process_bind_param(self, value, dialect):
        if value is None or dialect.name != "sqlite":
            return value
        with localcontext() as ctx:
            ctx.prec = 60
            amount = Decimal(str(value)).quantize(AMOUNT_QUANTUM)
        return format(amount, "040.18f")

    def process_result_value(self, value, dialect):
        if value is None or dialect.name != "sqlite":
            return value
        return Decimal(value)


AMOUNT = ChainAmount(38, 18)
ODDS = Numeric(10, 2)
ZERO = Decimal("0")


class MarketStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


class BetStatus(str, Enum):
    ACTIVE = "active"
    WON = "won"
    LOST = "lost"
    CLAIMED = "claimed"


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    DEFERRED = "deferred"
    QUARANTINED = "quarantined"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(42), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    bets: Mapped[list["Bet"]] = relationship("Bet", back_populates="user")


class Market(Base):
    __tablename__ = "markets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain_market_id: Mapped[str | None] = mapped_column(String(78), unique=True, nullable=True)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=MarketStatus.ACTIVE.value)
    result: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    resolution_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    vault_address: Mapped[str | None] = mapped_column(String(42), nullable=True)

    yes_pool_size: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=ZERO)
    no_pool_size: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=ZERO)
    total_pool_size: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=ZERO)
    volume: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=ZERO)
    count_yes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    count_no: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_yes_shares: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=ZERO)
    total_no_shares: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=ZERO)

    rebalance_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_rebalanced_amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False, default=ZERO)
    last_rebalanced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    bets: Mapped[list["Bet"]] = relationship("Bet", back_populates="market")

    @property
    def is_vault_model(self) -> bool:
        return self.vault_address is not None


class Bet(Base):
    __tablename__ = "bets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain_bet_id: Mapped[str | None] = mapped_column(String(78), unique=True, nullable=True)
    source_event_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    market_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("markets.id"), nullable=True, index=True)
    chain_market_id: Mapped[str] = mapped_column(String(78), nullable=False, index=True)
    position: Mapped[bool] = mapped_column(Boolean, nullable=False)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    shares: Mapped[Decimal | None] = mapped_column(AMOUNT, nullable=True)
    odds: Mapped[Decimal | None] = mapped_column(ODDS, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=BetStatus.ACTIVE.value)
    payout: Mapped[Decimal | None] = mapped_column(AMOUNT, nullable=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    placed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    user: Mapped[User] = relationship("User", back_populates="bets")
    market: Mapped[Market | None] = relationship("Market", back_populates="bets")

    __table_args__ = (
        Index("ix_bets_user_market_status", "user_id", "market_id", "status"),
        Index("ix_bets_market_chain_order", "market_id", "block_number", "log_index"),
    )


class SyncCursor(Base):
    __tablename__ = "sync_cursors"

    contract_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    contract_name: Mapped[str | None] = mapped_column(String, nullable=True)
    last_block: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_block_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


# ---------------------------------------------------------------------------
# Raw chain events. One append-only table per event type; rows are never
# deleted and only the processing bookkeeping columns change after insert.


class RawEventMixin:
    event_type: ClassVar[EventType]

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain_event_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    block_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    processing_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ProcessingStatus.PENDING.value, index=True
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def _envelope(self) -> dict[str, object]:
        return {
            "chain_event_id": self.chain_event_id,
            "block_number": self.block_number,
            "block_timestamp": self.block_timestamp,
            "transaction_hash": self.transaction_hash,
            "log_index": self.log_index,
        }

    def to_domain(self) -> ChainEvent:
        raise NotImplementedError


class MarketCreatedEvent(RawEventMixin, Base):
    __tablename__ = "market_created_events"
    event_type = EventType.MARKET_CREATED

    chain_market_id: Mapped[str | None] = mapped_column(String(78), nullable=True, index=True)
    question: Mapped[str | None] = mapped_column(Text, nullable=True)
    end_time: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    betting_deadline: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    vault_address: Mapped[str | None] = mapped_column(String(42), nullable=True)

    def to_domain(self) -> MarketCreated:
        return MarketCreated(
            **self._envelope(),
            chain_market_id=self.chain_market_id,
            question=self.question or "",
            end_time=self.end_time,
            betting_deadline=self.betting_deadline,
            vault_address=self.vault_address,
        )


class BetPlacedEvent(RawEventMixin, Base):
    __tablename__ = "bet_placed_events"
    event_type = EventType.BET_PLACED

    chain_market_id: Mapped[str | None] = mapped_column(String(78), nullable=True, index=True)
    chain_bet_id: Mapped[str | None] = mapped_column(String(78), nullable=True, index=True)
    user_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    position: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(AMOUNT, nullable=True)
    shares: Mapped[Decimal | None] = mapped_column(AMOUNT, nullable=True)

    def to_domain(self) -> BetPlaced:
        return BetPlaced(
            **self._envelope(),
            chain_market_id=self.chain_market_id,
            user_address=self.user_address,
            position=bool(self.position),
            amount=self.amount,
            shares=self.shares,
            chain_bet_id=self.chain_bet_id,
        )


class MarketResolvedEvent(RawEventMixin, Base):
    __tablename__ = "market_resolved_events"
    event_type = EventType.MARKET_RESOLVED

    chain_market_id: Mapped[str | None] = mapped_column(String(78), nullable=True, index=True)
    outcome: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    def to_domain(self) -> MarketResolved:
        return MarketResolved(
            **self._envelope(),
            chain_market_id=self.chain_market_id,
            outcome=bool(self.outcome),
        )


class WinningsClaimedEvent(RawEventMixin, Base):
    __tablename__ = "winnings_claimed_events"
    event_type = EventType.WINNINGS_CLAIMED

    chain_market_id: Mapped[str | None] = mapped_column(String(78), nullable=True, index=True)
    chain_bet_id: Mapped[str | None] = mapped_column(String(78), nullable=True, index=True)
    user_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    winning_amount: Mapped[Decimal | None] = mapped_column(AMOUNT, nullable=True)

    def to_domain(self) -> WinningsClaimed:
        return WinningsClaimed(
            **self._envelope(),
            user_address=self.user_address,
            winning_amount=self.winning_amount,
            chain_market_id=self.chain_market_id,
            chain_bet_id=self.chain_bet_id,
        )


class MarketVaultRebalancedEvent(RawEventMixin, Base):
    __tablename__ = "market_vault_rebalanced_events"
    event_type = EventType.MARKET_VAULT_REBALANCED

    chain_market_id: Mapped[str | None] = mapped_column(String(78), nullable=True, index=True)
    amount: Mapped[Decimal | None] = mapped_column(AMOUNT, nullable=True)

    def to_domain(self) -> MarketVaultRebalanced:
        return MarketVaultRebalanced(
            **self._envelope(),
            chain_market_id=self.chain_market_id,
            amount=self.amount,
        )


RAW_EVENT_MODELS: dict[EventType, type[RawEventMixin]] = {
    model.event_type: model
    for model in (
        MarketCreatedEvent,
        BetPlacedEvent,
        MarketResolvedEvent,
        WinningsClaimedEvent,
        MarketVaultRebalancedEvent,
    )
}
