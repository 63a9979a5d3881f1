from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from app.domain import BetPlaced, EventType, MarketCreated, WinningsClaimed
from app.errors import MalformedEvent
from ingestion.normalize import extract_envelope, normalize_event, parse_event_type


def test_market_created_falls_back_to_betting_deadline():
    event = normalize_event(
        "MarketCreated",
        {
            "transactionHash": "0xABC",
            "logIndex": "0x2",
            "blockNumber": "0x10",
            "marketId": "7",
            "question": "Rain tomorrow?",
            "endTime": 0,
            "bettingDeadline": 1_700_000_000,
        },
    )

    assert isinstance(event, MarketCreated)
    assert event.chain_event_id == "0xABC-2"
    assert event.transaction_hash == "0xabc"
    assert event.block_number == 16
    assert event.log_index == 2
    assert event.end_date == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)
    assert not event.is_vault_model


def test_bet_placed_supports_legacy_and_vault_shapes():
    legacy = normalize_event(
        EventType.BET_PLACED,
        {
            "id": "evt-1",
            "blockNumber": 5,
            "txHash": "0x1",
            "marketId": 1,
            "user": "0xABCDEF",
            "position": True,
            "amount": "100",
            "betId": "42",
        },
    )
    vault = normalize_event(
        "bet_placed",
        {
            "id": "evt-2",
            "blockNumber": 6,
            "txHash": "0x2",
            "marketId": "1",
            "userAddress": "0xabcdef",
            "isYes": "false",
            "assets": "12.5",
            "shares": "10",
        },
    )

    assert isinstance(legacy, BetPlaced)
    assert legacy.has_explicit_bet_id and legacy.chain_bet_id == "42"
    assert legacy.user_address == "0xabcdef"
    assert not legacy.is_vault_model

    assert vault.position is False
    assert vault.amount == Decimal("12.5")
    assert vault.shares == Decimal("10")
    assert vault.is_vault_model
    assert not vault.has_explicit_bet_id


def test_claim_accepts_bet_id_without_market():
    event = normalize_event(
        "WinningsClaimed",
        {"id": "c1", "blockNumber": 9, "txHash": "0x9", "betId": "3", "winner": "0xA", "amount": "5"},
    )
    assert isinstance(event, WinningsClaimed)
    assert event.chain_market_id is None
    assert event.winning_amount == Decimal("5")


@pytest.mark.parametrize(
    ("event_type", "payload"),
    [
        ("BetPlaced", {"id": "x", "blockNumber": 1, "txHash": "0x1", "marketId": "1", "user": "0xa", "amount": "1"}),
        ("BetPlaced", {"id": "x", "blockNumber": 1, "txHash": "0x1", "marketId": "1", "user": "0xa", "position": True, "amount": "-1"}),
        ("WinningsClaimed", {"id": "x", "blockNumber": 1, "txHash": "0x1", "user": "0xa", "amount": "1"}),
        ("MarketResolved", {"id": "x", "txHash": "0x1", "marketId": "1", "outcome": True}),
    ],
)
def test_malformed_payloads_raise(event_type, payload):
    with pytest.raises(MalformedEvent):
        normalize_event(event_type, payload)


def test_unknown_event_type_is_malformed():
    with pytest.raises(MalformedEvent):
        parse_event_type("MarketPaused")


def test_envelope_requires_a_key():
    with pytest.raises(MalformedEvent):
        extract_envelope(EventType.MARKET_RESOLVED, {"blockNumber": 1})


def test_iso_timestamps_are_accepted():
    envelope = extract_envelope(
        EventType.MARKET_RESOLVED,
        {"id": "r1", "blockNumber": 1, "txHash": "0x1", "timestamp": "2024-01-02T03:04:05Z"},
    )
    assert envelope["block_timestamp"] == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def test_zero_end_time_does_not_hide_a_later_alias():
    event = normalize_event(
        "MarketCreated",
        {
            "id": "mc-aliases",
            "blockNumber": 3,
            "txHash": "0x3",
            "marketId": "9",
            "endTime": 0,
            "endDate": 1_750_000_000,
            "bettingDeadline": 1_700_000_000,
        },
    )

    assert event.end_date == datetime.fromtimestamp(1_750_000_000, tz=timezone.utc)


@pytest.mark.parametrize("field", ["endTime", "bettingDeadline", "blockTimestamp"])
def test_millisecond_timestamps_are_malformed(field):
    payload = {
        "id": "mc-millis",
        "blockNumber": 4,
        "txHash": "0x4",
        "marketId": "9",
        field: 1_800_000_000_000,
    }

    with pytest.raises(MalformedEvent, match="out of range"):
        normalize_event("MarketCreated", payload)
