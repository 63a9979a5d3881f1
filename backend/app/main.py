from __future__ import annotations

from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Query

from . import schemas
from .core.config import settings
from .db import get_db, init_db
from .services.market_service import MarketQuery, MarketService

app = FastAPI(title="PredictSync API", version="0.1.0", debug=settings.debug)


@app.on_event("startup")
def on_startup() -> None:
    """Create tables when the API boots."""

    init_db()


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness check consumed by infrastructure monitors."""

    return {"status": "ok"}


def _market_query(
    *,
    status: Annotated[
        str | None,
        Query(description="Market status filter", pattern="^(active|resolved)$"),
    ] = None,
    sort: Annotated[
        str,
        Query(description="Field to sort by", pattern="^(id|end_date|volume|created_at)$"),
    ] = "id",
    order: Annotated[
        str,
        Query(description="Sort order (asc|desc)", pattern="^(asc|desc)$", min_length=3, max_length=4),
    ] = "asc",
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> MarketQuery:
    """Normalize shared market listing query parameters."""

    return MarketQuery(status=status, sort=sort, order=order, limit=limit, offset=offset)


def _market_service(db=Depends(get_db)) -> MarketService:
    """Provide the market service wired with a SQLAlchemy session."""

    return MarketService(db)


BetStatusQuery = Annotated[
    str | None,
    Query(description="Bet status filter", pattern="^(active|won|lost|claimed)$"),
]
LimitQuery = Annotated[int, Query(ge=1, le=500)]
OffsetQuery = Annotated[int, Query(ge=0)]


@app.get("/markets", response_model=schemas.MarketList, tags=["markets"])
def list_markets(
    *,
    query: MarketQuery = Depends(_market_query),
    service: MarketService = Depends(_market_service),
):
    """List projected markets with pagination and sorting controls."""

    result = service.list_markets(query)
    return schemas.MarketList(total=result.total, items=list(result.markets))


@app.get("/markets/chain/{chain_market_id}", response_model=schemas.Market, tags=["markets"])
def get_market_by_chain_id(chain_market_id: str, service: MarketService = Depends(_market_service)):
    """Retrieve a market by the identifier its contract assigned."""

    market = service.get_market_by_chain_id(chain_market_id)
    if not market:
        raise HTTPException(status_code=404, detail="Market not found")
    return market


@app.get("/markets/{market_id}", response_model=schemas.Market, tags=["markets"])
def get_market(market_id: int, service: MarketService = Depends(_market_service)):
    """Retrieve a single market by its internal identifier."""

    market = service.get_market(market_id)
    if not market:
        raise HTTPException(status_code=404, detail="Market not found")
    return market


@app.get("/markets/{market_id}/bets", response_model=schemas.BetList, tags=["markets"])
def list_market_bets(
    market_id: int,
    *,
    status: BetStatusQuery = None,
    limit: LimitQuery = 50,
    offset: OffsetQuery = 0,
    service: MarketService = Depends(_market_service),
):
    """List the bets placed on a market in chain order."""

    result = service.list_market_bets(market_id, status=status, limit=limit, offset=offset)
    if result is None:
        raise HTTPException(status_code=404, detail="Market not found")
    return schemas.BetList(total=result.total, items=list(result.bets))


@app.get("/users/{address}", response_model=schemas.User, tags=["users"])
def get_user(address: str, service: MarketService = Depends(_market_service)):
    user = service.get_user(address)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@app.get("/users/{address}/bets", response_model=schemas.BetList, tags=["users"])
def list_user_bets(
    address: str,
    *,
    status: BetStatusQuery = None,
    limit: LimitQuery = 50,
    offset: OffsetQuery = 0,
    service: MarketService = Depends(_market_service),
):
    """List a user's bets across all markets."""

    result = service.list_user_bets(address, status=status, limit=limit, offset=offset)
    if result is None:
        raise HTTPException(status_code=404, detail="User not found")
    return schemas.BetList(total=result.total, items=list(result.bets))


@app.get("/sync/cursors", response_model=list[schemas.SyncCursor], tags=["system"])
def list_sync_cursors(service: MarketService = Depends(_market_service)):
    """Report how far each watched contract has been ingested."""

    return service.list_sync_cursors()
