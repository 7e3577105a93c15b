"""
Market data endpoints served through the rate-limited cache.
"""
from typing import Any, Dict, List
from fastapi import APIRouter, Depends, HTTPException, Query
import asyncio
from advisor.api.deps import get_market_data
from advisor.models.schemas import MarketDataBatchRequest, ResponseBase
from advisor.services.market_data import MarketDataCache, normalize_symbols
from advisor.utils import get_logger

router = APIRouter()
logger = get_logger(__name__)

@router.get(
    "/stats",
    response_model=ResponseBase,
    summary="Cache size and daily call budget"
)
async def get_market_data_stats(
    cache: MarketDataCache = Depends(get_market_data)
) -> ResponseBase:
    stats = cache.stats()
    removed = cache.cleanup()
    return ResponseBase(
        data={
            "stats": stats,
            "cleaned_up": removed,
            "ttl_seconds": dict(cache.ttl_seconds),
        }
    )

async def _load_batch(cache: MarketDataCache, symbols: List[str], kind: str, limit: int, days: int) -> Any:
    if kind == "quote":
        return await cache.get_quotes(symbols)
    if kind == "news":
        return await cache.get_news(symbols, limit)
    # one cache entry per symbol; concurrent misses still share the budget
    series = await asyncio.gather(*(cache.get_historical(s, days) for s in symbols))
    return dict(zip(symbols, series))

def _batch_response(cache: MarketDataCache, symbols: List[str], kind: str, data: Any) -> ResponseBase:
    stats = cache.stats()
    response_type = {"quote": "quotes"}.get(kind, kind)
    payload: Dict[str, Any] = {
        "type": response_type,
        "symbols": symbols,
        "count": len(data),
        "data": data,
        "meta": {
            "api_calls_today": stats["daily_call_count"],
            "remaining_calls": stats["remaining_calls"],
            "cache_size": stats["size"],
        },
    }
    return ResponseBase(data=payload)

@router.get(
    "/batch",
    response_model=ResponseBase,
    summary="Quotes or news for a comma separated symbol list"
)
async def get_market_data_batch(
    symbols: str = Query(..., description="Comma separated symbols"),
    type: str = Query("quote", pattern="^(quote|news)$"),
    limit: int = Query(10, ge=1, le=100),
    cache: MarketDataCache = Depends(get_market_data)
) -> ResponseBase:
    symbol_list = normalize_symbols(symbols.split(","))
    if not symbol_list:
        raise HTTPException(status_code=400, detail="symbols parameter is required")
    data = await _load_batch(cache, symbol_list, type, limit, 30)
    logger.info("Market data batch served", type=type, symbols=len(symbol_list))
    return _batch_response(cache, symbol_list, type, data)

@router.post(
    "/batch",
    response_model=ResponseBase,
    summary="Quotes, news or historical prices for a symbol list"
)
async def post_market_data_batch(
    body: MarketDataBatchRequest,
    cache: MarketDataCache = Depends(get_market_data)
) -> ResponseBase:
    symbol_list = normalize_symbols(body.symbols)
    if not symbol_list:
        raise HTTPException(status_code=400, detail="symbols array is required in request body")
    data = await _load_batch(cache, symbol_list, body.type, body.limit, body.days)
    logger.info("Market data batch served", type=body.type, symbols=len(symbol_list))
    return _batch_response(cache, symbol_list, body.type, data)
