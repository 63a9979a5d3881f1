from __future__ import annotations

from sqlalchemy import func, select

from app.models import Market, User
from app.repositories import EntityResolver


def test_resolve_user_is_case_insensitive_and_stable(session):
    resolver = EntityResolver(session)

    first = resolver.resolve_user("0xABCdef")
    second = resolver.resolve_user(" 0xabcDEF ")

    assert first == second
    assert session.scalar(select(func.count(User.id))) == 1
    assert resolver.get_user("0xABCDEF").id == first


def test_resolve_user_reuses_rows_across_resolvers(session):
    first = EntityResolver(session).resolve_user("0x1")
    second = EntityResolver(session).resolve_user("0x1")
    assert first == second


def test_resolve_user_recovers_from_concurrent_insert(session, monkeypatch):
    resolver = EntityResolver(session)
    session.add(User(address="0xrace"))
    session.flush()
    # Pretend the pre-check ran before the competing insert landed.
    monkeypatch.setattr(resolver, "_find_user_id", _miss_once(resolver._find_user_id))

    user_id = resolver.resolve_user("0xRACE")

    assert user_id == session.scalar(select(User.id).where(User.address == "0xrace"))
    assert session.scalar(select(func.count(User.id))) == 1


def _miss_once(lookup):
    calls = {"count": 0}

    def wrapper(address):
        calls["count"] += 1
        if calls["count"] == 1:
            return None
        return lookup(address)

    return wrapper


def test_resolve_market_returns_none_until_created(session):
    resolver = EntityResolver(session)
    assert resolver.resolve_market("9") is None

    market = Market(chain_market_id="9", question="?")
    session.add(market)
    session.flush()

    assert resolver.resolve_market("9") == market.id
    assert resolver.get_market("9", for_update=True) is market
    assert resolver.get_market_by_id(market.id) is market
