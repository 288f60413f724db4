from decimal import Decimal

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel
from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.concurrency import run_in_threadpool

from stakehouse.config import settings
from stakehouse.core.engine import SettlementEngine
from stakehouse.core.logger import get_logger

limiter = Limiter(key_func=get_remote_address)

logger = get_logger("api")

router = APIRouter()

# ==================== Request Models ====================

class BetRequest(BaseModel):
    game_id: int
    bet: Decimal


class HandActionRequest(BaseModel):
    hand_id: str


# ==================== Helpers ====================

def get_account_id(request: Request) -> int:
    """Account id from cookie. Identity itself is handled upstream."""
    account_id = request.cookies.get("account_id")
    if not account_id:
        raise HTTPException(status_code=401, detail="Not logged in")
    try:
        return int(account_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid account cookie")


def get_engine(request: Request) -> SettlementEngine:
    return request.app.state.engine


def get_rate_limit():
    """Get rate limit string from config."""
    return settings.rate_limit.game_requests if settings.rate_limit.enabled else "1000/minute"


def get_api_rate_limit():
    return settings.rate_limit.api_requests if settings.rate_limit.enabled else "1000/minute"


# ==================== Catalog Endpoints ====================

@router.get("/games")
@limiter.limit(get_api_rate_limit)
async def list_games(request: Request):
    engine = get_engine(request)
    games = await run_in_threadpool(engine.catalog.list_games)
    return {"games": [g.to_dict() for g in games]}


@router.get("/games/{game_id}")
@limiter.limit(get_api_rate_limit)
async def get_game(request: Request, game_id: int):
    engine = get_engine(request)
    definition = await run_in_threadpool(engine.catalog.get, game_id)
    return definition.to_dict()


# ==================== Game Endpoints ====================

@router.post("/games/slots/spin")
@limiter.limit(get_rate_limit)
async def slots_spin(request: Request, data: BetRequest):
    account_id = get_account_id(request)
    engine = get_engine(request)
    return await run_in_threadpool(
        engine.coordinator.resolve_slot_wager, account_id, data.game_id, data.bet
    )


@router.post("/games/blackjack/deal")
@limiter.limit(get_rate_limit)
async def blackjack_deal(request: Request, data: BetRequest):
    account_id = get_account_id(request)
    engine = get_engine(request)
    return await run_in_threadpool(engine.blackjack.deal, account_id, data.game_id, data.bet)


@router.post("/games/blackjack/hit")
@limiter.limit(get_rate_limit)
async def blackjack_hit(request: Request, data: HandActionRequest):
    account_id = get_account_id(request)
    engine = get_engine(request)
    return await run_in_threadpool(engine.blackjack.hit, account_id, data.hand_id)


@router.post("/games/blackjack/stand")
@limiter.limit(get_rate_limit)
async def blackjack_stand(request: Request, data: HandActionRequest):
    account_id = get_account_id(request)
    engine = get_engine(request)
    return await run_in_threadpool(engine.blackjack.stand, account_id, data.hand_id)


@router.post("/games/blackjack/double")
@limiter.limit(get_rate_limit)
async def blackjack_double(request: Request, data: HandActionRequest):
    account_id = get_account_id(request)
    engine = get_engine(request)
    return await run_in_threadpool(engine.blackjack.double, account_id, data.hand_id)


@router.get("/games/blackjack/hands/{hand_id}")
@limiter.limit(get_api_rate_limit)
async def blackjack_hand(request: Request, hand_id: str):
    account_id = get_account_id(request)
    engine = get_engine(request)
    return await run_in_threadpool(engine.blackjack.get_hand, account_id, hand_id)


# ==================== Account Endpoints ====================

@router.get("/account/balance")
@limiter.limit(get_api_rate_limit)
async def get_balance(request: Request):
    account_id = get_account_id(request)
    engine = get_engine(request)
    account = await run_in_threadpool(engine.ledger.get_account, account_id)
    return account.to_dict()


@router.get("/account/transactions")
@limiter.limit(get_api_rate_limit)
async def get_transactions(request: Request, limit: int = Query(50, ge=1, le=500)):
    account_id = get_account_id(request)
    engine = get_engine(request)
    entries = await run_in_threadpool(engine.ledger.list_entries, account_id, limit)
    return {"transactions": [e.to_dict() for e in entries]}


@router.get("/account/results")
@limiter.limit(get_api_rate_limit)
async def get_results(request: Request, limit: int = Query(50, ge=1, le=500)):
    account_id = get_account_id(request)
    engine = get_engine(request)
    results = await run_in_threadpool(engine.stats.recent_results, account_id, limit)
    return {"results": results}


@router.get("/account/stats")
@limiter.limit(get_api_rate_limit)
async def get_account_stats(request: Request):
    account_id = get_account_id(request)
    engine = get_engine(request)
    stats = await run_in_threadpool(engine.stats.compute_stats, account_id)
    breakdown = await run_in_threadpool(engine.stats.game_breakdown, account_id)
    return {**stats.to_dict(), "games": breakdown}


# ==================== Leaderboard ====================

@router.get("/leaderboard")
@limiter.limit(get_api_rate_limit)
async def get_leaderboard(request: Request):
    """Get public leaderboard data from the cached snapshot."""
    engine = get_engine(request)
    snapshot = await run_in_threadpool(engine.stats.platform_snapshot)
    return {"leaderboard": snapshot["leaderboard"], "refreshed_at": snapshot["refreshed_at"]}


@router.get("/stats")
@limiter.limit(get_api_rate_limit)
async def get_platform_stats(request: Request):
    engine = get_engine(request)
    return await run_in_threadpool(engine.stats.platform_snapshot)
