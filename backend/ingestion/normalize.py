from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping

from dateutil import parser as date_parser

from app.domain import (
    BetPlaced,
    ChainEvent,
    EventType,
    MarketCreated,
    MarketResolved,
    MarketVaultRebalanced,
    WinningsClaimed,
)
from app.errors import MalformedEvent

# Field spellings seen across contract generations and indexer versions.
_CHAIN_EVENT_ID_KEYS = ("chainEventId", "chain_event_id", "id", "eventId")
_BLOCK_NUMBER_KEYS = ("blockNumber", "block_number")
_BLOCK_TIMESTAMP_KEYS = ("blockTimestamp", "block_timestamp", "timestamp")
_TX_HASH_KEYS = ("transactionHash", "txHash", "transaction_hash", "tx_hash")
_LOG_INDEX_KEYS = ("logIndex", "log_index")
_MARKET_ID_KEYS = ("chainMarketId", "marketId", "market_id", "chain_market_id")
_BET_ID_KEYS = ("chainBetId", "betId", "bet_id", "chain_bet_id")
_USER_KEYS = ("user", "userAddress", "user_address", "bettor", "claimer", "winner")
_END_TIME_KEYS = ("endTime", "endDate", "end_time", "end_date")
_DEADLINE_KEYS = ("bettingDeadline", "betting_deadline")

# 9999-12-31T23:59:59Z
_MAX_UNIX_SECONDS = 253_402_300_799


def _first(raw: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def _parse_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str) and value.lower().startswith("0x"):
        try:
            return int(value, 16)
        except ValueError:
            return None
    try:
        return int(value)
    except (TypeError, ValueError):
        decimal_val = _parse_decimal(value)
        if decimal_val is None:
            return None
        return int(decimal_val)


def _parse_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not parsed.is_finite():
        return None
    return parsed


def _parse_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1"}:
            return True
        if lowered in {"false", "no", "0"}:
            return False
    return None


def _parse_unix(value: Any) -> int | None:
    """Read a unix timestamp from an integer, numeric string, or ISO date.

    Raises :class:`MalformedEvent` for integers past year 9999, which is
    what millisecond or wei-scaled values look like.
    """

    parsed = _parse_int(value)
    if parsed is not None:
        if abs(parsed) > _MAX_UNIX_SECONDS:
            raise MalformedEvent(f"timestamp {value!r} is out of range for unix seconds")
        return parsed
    if isinstance(value, datetime):
        return int(value.timestamp())
    if isinstance(value, str):
        try:
            moment = date_parser.isoparse(value)
        except (ValueError, TypeError, OverflowError):
            return None
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return int(moment.timestamp())
    return None


def _first_unix(raw: Mapping[str, Any], keys: tuple[str, ...]) -> int | None:
    """First positive timestamp among ``keys``; zero means "not provided"."""

    for key in keys:
        seconds = _parse_unix(raw.get(key))
        if seconds is not None and seconds > 0:
            return seconds
    return None


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    seconds = _parse_unix(value)
    if seconds is None:
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise MalformedEvent(f"timestamp {value!r} is out of range") from exc


def _parse_address(value: Any) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip().lower()


def _parse_identifier(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    as_int = _parse_int(value)
    if as_int is not None:
        return str(as_int)
    text = str(value).strip()
    return text or None


def _require(value: Any, field: str, event_type: EventType) -> Any:
    if value is None:
        raise MalformedEvent(f"{event_type.value} payload is missing {field}")
    return value


def extract_envelope(
    event_type: EventType,
    raw: Mapping[str, Any],
    *,
    strict: bool = True,
) -> dict[str, Any]:
    """Return the chain envelope shared by every event type.

    The chain event id falls back to ``<txHash>-<logIndex>`` when the producer
    did not assign one. Raises :class:`MalformedEvent` when the event cannot
    be keyed or placed in block order. With ``strict=False`` an unreadable
    block timestamp is dropped instead.
    """

    transaction_hash = _first(raw, _TX_HASH_KEYS)
    log_index = _parse_int(_first(raw, _LOG_INDEX_KEYS))
    chain_event_id = _first(raw, _CHAIN_EVENT_ID_KEYS)
    if chain_event_id is None and transaction_hash is not None and log_index is not None:
        chain_event_id = f"{transaction_hash}-{log_index}"

    block_number = _parse_int(_first(raw, _BLOCK_NUMBER_KEYS))
    try:
        block_timestamp = _parse_datetime(_first(raw, _BLOCK_TIMESTAMP_KEYS))
    except MalformedEvent:
        if strict:
            raise
        block_timestamp = None
    return {
        "chain_event_id": str(_require(chain_event_id, "chain event id", event_type)),
        "block_number": _require(block_number, "block number", event_type),
        "block_timestamp": block_timestamp,
        "transaction_hash": str(_require(transaction_hash, "transaction hash", event_type)).lower(),
        "log_index": log_index or 0,
    }


def _normalize_market_created(raw: Mapping[str, Any], envelope: dict[str, Any]) -> MarketCreated:
    event_type = EventType.MARKET_CREATED
    return MarketCreated(
        **envelope,
        chain_market_id=_require(_parse_identifier(_first(raw, _MARKET_ID_KEYS)), "market id", event_type),
        question=str(raw.get("question") or raw.get("title") or ""),
        end_time=_first_unix(raw, _END_TIME_KEYS),
        betting_deadline=_first_unix(raw, _DEADLINE_KEYS),
        vault_address=_parse_address(_first(raw, ("vaultAddress", "vault", "vault_address"))),
    )


def _normalize_bet_placed(raw: Mapping[str, Any], envelope: dict[str, Any]) -> BetPlaced:
    event_type = EventType.BET_PLACED
    amount = _require(_parse_decimal(_first(raw, ("amount", "assets"))), "amount", event_type)
    if amount < 0:
        raise MalformedEvent(f"{event_type.value} amount must not be negative")
    shares = _parse_decimal(raw.get("shares"))
    if shares is not None and shares < 0:
        raise MalformedEvent(f"{event_type.value} shares must not be negative")
    return BetPlaced(
        **envelope,
        chain_market_id=_require(_parse_identifier(_first(raw, _MARKET_ID_KEYS)), "market id", event_type),
        user_address=_require(_parse_address(_first(raw, _USER_KEYS)), "user", event_type),
        position=_require(_parse_bool(_first(raw, ("position", "isYes", "side"))), "position", event_type),
        amount=amount,
        shares=shares,
        chain_bet_id=_parse_identifier(_first(raw, _BET_ID_KEYS)),
    )


def _normalize_market_resolved(raw: Mapping[str, Any], envelope: dict[str, Any]) -> MarketResolved:
    event_type = EventType.MARKET_RESOLVED
    return MarketResolved(
        **envelope,
        chain_market_id=_require(_parse_identifier(_first(raw, _MARKET_ID_KEYS)), "market id", event_type),
        outcome=_require(_parse_bool(_first(raw, ("outcome", "result"))), "outcome", event_type),
    )


def _normalize_winnings_claimed(raw: Mapping[str, Any], envelope: dict[str, Any]) -> WinningsClaimed:
    event_type = EventType.WINNINGS_CLAIMED
    chain_market_id = _parse_identifier(_first(raw, _MARKET_ID_KEYS))
    chain_bet_id = _parse_identifier(_first(raw, _BET_ID_KEYS))
    if chain_market_id is None and chain_bet_id is None:
        raise MalformedEvent(f"{event_type.value} payload needs a market id or a bet id")
    amount = _require(
        _parse_decimal(_first(raw, ("winningAmount", "winning_amount", "amount", "payout"))),
        "winning amount",
        event_type,
    )
    if amount < 0:
        raise MalformedEvent(f"{event_type.value} winning amount must not be negative")
    return WinningsClaimed(
        **envelope,
        user_address=_require(_parse_address(_first(raw, _USER_KEYS)), "user", event_type),
        winning_amount=amount,
        chain_market_id=chain_market_id,
        chain_bet_id=chain_bet_id,
    )


def _normalize_vault_rebalanced(raw: Mapping[str, Any], envelope: dict[str, Any]) -> MarketVaultRebalanced:
    event_type = EventType.MARKET_VAULT_REBALANCED
    return MarketVaultRebalanced(
        **envelope,
        chain_market_id=_require(_parse_identifier(_first(raw, _MARKET_ID_KEYS)), "market id", event_type),
        amount=_require(_parse_decimal(raw.get("amount")), "amount", event_type),
    )


_NORMALIZERS: dict[EventType, Callable[[Mapping[str, Any], dict[str, Any]], ChainEvent]] = {
    EventType.MARKET_CREATED: _normalize_market_created,
    EventType.BET_PLACED: _normalize_bet_placed,
    EventType.MARKET_RESOLVED: _normalize_market_resolved,
    EventType.WINNINGS_CLAIMED: _normalize_winnings_claimed,
    EventType.MARKET_VAULT_REBALANCED: _normalize_vault_rebalanced,
}


def parse_event_type(value: str | EventType) -> EventType:
    if isinstance(value, EventType):
        return value
    candidate = str(value).strip()
    aliases = {
        "MarketCreated": EventType.MARKET_CREATED,
        "BetPlaced": EventType.BET_PLACED,
        "MarketResolved": EventType.MARKET_RESOLVED,
        "WinningsClaimed": EventType.WINNINGS_CLAIMED,
        "MarketVaultRebalanced": EventType.MARKET_VAULT_REBALANCED,
    }
    if candidate in aliases:
        return aliases[candidate]
    try:
        return EventType(candidate.lower())
    except ValueError as exc:
        raise MalformedEvent(f"Unknown event type '{value}'") from exc


def normalize_event(event_type: str | EventType, raw: Mapping[str, Any]) -> ChainEvent:
    """Build a typed chain event from a producer payload.

    Missing optional fields (bet id, shares, vault address, end time) are
    tolerated; missing required fields raise :class:`MalformedEvent`.
    """

    resolved_type = parse_event_type(event_type)
    if not isinstance(raw, Mapping):
        raise MalformedEvent(f"{resolved_type.value} payload must be a mapping")
    envelope = extract_envelope(resolved_type, raw)
    return _NORMALIZERS[resolved_type](raw, envelope)


__all__ = ["extract_envelope", "normalize_event", "parse_event_type"]
