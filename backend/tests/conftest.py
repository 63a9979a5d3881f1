from __future__ import annotations

import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from app import models  # noqa: F401
from app.core.config import Settings
from app.db import Base, create_db_engine, create_session_factory
from app.services.locks import MarketLockRegistry
from ingestion.projection import ProjectionService

MARKET_CONTRACT = "0x00000000000000000000000000000000000000aa"
ALICE = "0xAaAaAaAaAaAaAaAaAaAaAaAaAaAaAaAaAaAaAaAa"
BOB = "0xbBbBBBBbbBBBbbbBbbBbbbbBBbBbbbbBbBbbBBbB"


@pytest.fixture
def test_settings(tmp_path, monkeypatch) -> Settings:
    settings = Settings(
        database_url=f"sqlite:///{tmp_path/'predictsync.db'}",
        projection_batch_size=100,
        projection_workers=1,
        pipeline_db_retry_attempts=3,
        pipeline_db_retry_backoff_seconds="0.01,0.02",
        watched_contracts={MARKET_CONTRACT: "PredictionMarket"},
    )
    monkeypatch.setattr("app.core.config.get_settings", lambda: settings)
    monkeypatch.setattr("app.core.config.settings", settings)
    return settings


@pytest.fixture
def engine(test_settings):
    engine = create_db_engine(test_settings.resolved_database_url)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> Callable[[], Any]:
    """Commit-on-exit session scope bound to the per-test database."""

    factory = create_session_factory(engine)

    @contextmanager
    def scope():
        session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return scope


@pytest.fixture
def session(engine):
    """A single open session for tests that drive repositories directly."""

    session = create_session_factory(engine)()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def projection_service(test_settings, session_factory) -> ProjectionService:
    return ProjectionService(
        test_settings,
        session_factory=session_factory,
        locks=MarketLockRegistry(),
        sleep=lambda _delay: None,
    )


def envelope(
    event_id: str,
    block: int,
    log_index: int = 0,
    *,
    timestamp: int = 1_700_000_000,
) -> dict[str, Any]:
    return {
        "chainEventId": event_id,
        "blockNumber": block,
        "blockTimestamp": timestamp + block,
        "transactionHash": f"0x{block:064x}",
        "logIndex": log_index,
    }


def market_created(event_id: str, block: int, market_id: str = "1", **extra: Any) -> dict[str, Any]:
    return {
        **envelope(event_id, block),
        "marketId": market_id,
        "question": f"Will market {market_id} resolve YES?",
        "endTime": 1_800_000_000,
        **extra,
    }


def bet_placed(
    event_id: str,
    block: int,
    *,
    user: str,
    position: bool,
    amount: str,
    market_id: str = "1",
    log_index: int = 0,
    **extra: Any,
) -> dict[str, Any]:
    return {
        **envelope(event_id, block, log_index),
        "marketId": market_id,
        "user": user,
        "position": position,
        "amount": amount,
        **extra,
    }


def market_resolved(event_id: str, block: int, *, outcome: bool, market_id: str = "1") -> dict[str, Any]:
    return {**envelope(event_id, block), "marketId": market_id, "outcome": outcome}


def winnings_claimed(
    event_id: str,
    block: int,
    *,
    user: str,
    amount: str,
    market_id: str | None = "1",
    **extra: Any,
) -> dict[str, Any]:
    payload: dict[str, Any] = {**envelope(event_id, block), "user": user, "winningAmount": amount, **extra}
    if market_id is not None:
        payload["marketId"] = market_id
    return payload
