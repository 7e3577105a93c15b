"""Rate-limited, coalescing cache in front of the Financial Modeling Prep API.

Every market data read in the process goes through one ``MarketDataCache``.
Per request the algorithm is identical for quotes, news and historical series:

  1. Normalize into a cache key (endpoint + sorted params; symbol lists are
     upper-cased, de-duplicated and sorted).
  2. Identical request already in flight -> await that same task.
  3. Fresh cache entry -> return it (no budget used).
  4. Otherwise reserve a slot in the daily call budget and call upstream.
  5. Success -> cache with the kind's TTL and return.
  6. Failure (budget exhausted, transport error, non-2xx, malformed or empty
     body) -> serve the expired entry for the key marked ``expired`` if one
     exists; else raise. News degrades to an empty list instead of raising.

Expired entries are never evicted implicitly; ``cleanup()`` purges them on
demand (the stats endpoint calls it).
"""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional

import aiohttp

from advisor.config import MARKET_DATA_SETTINGS
from advisor.utils import get_logger, log_performance
from advisor.utils.budget import DailyCallBudget

logger = get_logger(__name__)


class MarketDataError(RuntimeError):
    """Market data could not be served (and no stale copy was available)."""


class BudgetExhaustedError(MarketDataError):
    """The daily upstream call budget is spent."""

    def __init__(self, limit: int):
        super().__init__(f"Daily API limit reached ({limit} calls)")
        self.limit = limit


class UpstreamError(MarketDataError):
    """Transport failure, non-2xx status, or an unusable response body."""

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status


@dataclass
class CacheEntry:
    data: Any
    timestamp: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.timestamp < self.ttl


def make_cache_key(endpoint: str, params: dict[str, Any]) -> str:
    """Deterministic key: identical params in any order map to the same string."""
    return f"{endpoint}_{json.dumps(params, sort_keys=True, separators=(',', ':'))}"


def normalize_symbols(symbols: Iterable[str] | None) -> list[str]:
    cleaned = {str(s).strip().upper() for s in (symbols or []) if str(s).strip()}
    return sorted(cleaned)


def _mark_expired(data: Any) -> Any:
    if isinstance(data, list):
        return [{**item, "expired": True} if isinstance(item, dict) else item for item in data]
    if isinstance(data, dict):
        return {**data, "expired": True}
    return data


class MarketDataCache:
    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str | None = None,
        daily_call_budget: int | None = None,
        ttl_seconds: dict[str, float] | None = None,
        request_timeout_seconds: float | None = None,
        user_agent: str | None = None,
        budget: DailyCallBudget | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.api_key = api_key
        self.base_url = (base_url or str(MARKET_DATA_SETTINGS["base_url"])).rstrip("/")
        limit = int(daily_call_budget if daily_call_budget is not None else MARKET_DATA_SETTINGS["daily_call_budget"])  # type: ignore[arg-type]
        self.budget = budget or DailyCallBudget(limit)
        self.budget.on_reset = lambda day: logger.info("Market data daily call count reset", reset_date=day)
        self.ttl_seconds: dict[str, float] = dict(MARKET_DATA_SETTINGS["ttl_seconds"])  # type: ignore[arg-type]
        self.ttl_seconds.update(ttl_seconds or {})
        self.request_timeout_seconds = float(request_timeout_seconds or MARKET_DATA_SETTINGS["request_timeout_seconds"])  # type: ignore[arg-type]
        self.user_agent = user_agent or str(MARKET_DATA_SETTINGS["user_agent"])
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._in_flight: dict[str, asyncio.Task] = {}
        self.hits = 0
        self.misses = 0
        self.coalesced = 0
        self.stale_served = 0

    # ----------------------------- upstream ----------------------------- #
    async def _request(self, path: str, params: dict[str, Any]) -> Any:
        """One GET against the provider; returns the decoded JSON body."""
        url = f"{self.base_url}/{path}"
        query = {**params, "apikey": self.api_key}
        timeout = aiohttp.ClientTimeout(total=self.request_timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout, headers={"User-Agent": self.user_agent}) as session:
                async with session.get(url, params=query) as response:
                    if response.status != 200:
                        raise UpstreamError(
                            f"FMP API error: {response.status} {response.reason or ''}".strip(),
                            status=response.status,
                        )
                    try:
                        return await response.json(content_type=None)
                    except ValueError as e:
                        raise UpstreamError(f"FMP API returned malformed JSON: {e}", status=response.status) from e
        except asyncio.TimeoutError:
            raise UpstreamError(f"FMP API request timed out after {self.request_timeout_seconds:g}s") from None
        except aiohttp.ClientError as e:
            raise UpstreamError(f"FMP API client error: {e}") from e

    async def _fetch_json(self, path: str, params: dict[str, Any]) -> Any:
        """Budget-gated upstream call. The slot is spent only when the provider answered."""
        if not self.api_key:
            raise MarketDataError("FMP_API_KEY is not configured")
        if not self.budget.try_reserve():
            logger.warning("Market data daily budget exhausted", limit=self.budget.limit)
            raise BudgetExhaustedError(self.budget.limit)
        started = time.perf_counter()
        committed = False
        try:
            data = await self._request(path, params)
            count = self.budget.commit()
            committed = True
        finally:
            if not committed:
                self.budget.release()
        logger.info("FMP API call succeeded", endpoint=path.split("/")[0], daily_count=count, limit=self.budget.limit)
        log_performance("fmp_request", (time.perf_counter() - started) * 1000, {"endpoint": path.split("/")[0]})
        return data

    # ----------------------------- cache core ----------------------------- #
    async def _cached(
        self,
        kind: str,
        key: str,
        load: Callable[[], Awaitable[Any]],
        *,
        degrade_to_empty: bool = False,
    ) -> Any:
        in_flight = self._in_flight.get(key)
        if in_flight is not None:
            self.coalesced += 1
            logger.debug("Market data request already in flight", key=key)
            return await asyncio.shield(in_flight)

        entry = self._entries.get(key)
        if entry is not None and entry.is_fresh(self._clock()):
            self.hits += 1
            logger.debug("Market data cache hit", key=key)
            return entry.data

        self.misses += 1
        task = asyncio.ensure_future(self._refresh(kind, key, load, degrade_to_empty))
        self._in_flight[key] = task
        task.add_done_callback(lambda t, k=key: self._forget_in_flight(k, t))
        return await asyncio.shield(task)

    def _forget_in_flight(self, key: str, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _refresh(self, kind: str, key: str, load: Callable[[], Awaitable[Any]], degrade_to_empty: bool) -> Any:
        try:
            data = await load()
        except MarketDataError as e:
            stale = self._entries.get(key)
            if stale is not None:
                self.stale_served += 1
                logger.warning("Serving expired market data after upstream failure", kind=kind, key=key, error=str(e))
                return _mark_expired(stale.data)
            if degrade_to_empty:
                logger.warning("Market data unavailable, degrading to empty result", kind=kind, error=str(e))
                return []
            logger.error("Market data fetch failed", kind=kind, key=key, error=str(e))
            raise
        self._entries[key] = CacheEntry(data=data, timestamp=self._clock(), ttl=float(self.ttl_seconds[kind]))
        logger.debug("Market data cached", kind=kind, key=key, ttl_seconds=self.ttl_seconds[kind])
        return data

    # ----------------------------- operations ----------------------------- #
    async def get_quotes(self, symbols: Iterable[str]) -> list[dict]:
        wanted = normalize_symbols(symbols)
        if not wanted:
            return []
        joined = ",".join(wanted)
        key = make_cache_key("quote", {"symbols": joined})

        async def load() -> list[dict]:
            data = await self._fetch_json(f"quote/{joined}", {})
            if not isinstance(data, list) or not data:
                raise UpstreamError(f"No quote data received for {joined}")
            return data

        return await self._cached("quote", key, load)

    async def get_quote(self, symbol: str) -> dict:
        wanted = symbol.strip().upper()
        quotes = await self.get_quotes([wanted])
        for quote in quotes:
            if str(quote.get("symbol", "")).upper() == wanted:
                return quote
        raise MarketDataError(f"No quote data found for {wanted}")

    async def get_news(self, symbols: Iterable[str] | None = None, limit: int = 10) -> list[dict]:
        wanted = normalize_symbols(symbols)
        key = make_cache_key("news", {"symbols": ",".join(wanted) or "general", "limit": int(limit)})

        async def load() -> list[dict]:
            params: dict[str, Any] = {"limit": int(limit)}
            if wanted:
                params["tickers"] = ",".join(wanted)
            data = await self._fetch_json("stock_news", params)
            if not isinstance(data, list):
                raise UpstreamError("FMP returned invalid news data")
            return data

        return await self._cached("news", key, load, degrade_to_empty=True)

    async def get_historical(self, symbol: str, days: int = 30) -> list[dict]:
        wanted = symbol.strip().upper()
        if not wanted:
            raise ValueError("symbol is required")
        key = make_cache_key("historical", {"symbol": wanted, "days": int(days)})

        async def load() -> list[dict]:
            data = await self._fetch_json(f"historical-price-full/{wanted}", {"timeseries": int(days)})
            series = data.get("historical") if isinstance(data, dict) else None
            if not isinstance(series, list) or not series:
                raise UpstreamError(f"No historical data received for {wanted}")
            return series

        return await self._cached("historical", key, load)

    # ----------------------------- maintenance ----------------------------- #
    def cleanup(self) -> int:
        """Purge entries whose TTL has fully elapsed; returns how many were removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if not e.is_fresh(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.info("Cleaned up expired market data entries", removed=len(expired))
        return len(expired)

    def seed(self, kind: str, key: str, data: Any, *, timestamp: float | None = None) -> None:
        """Insert an entry directly (warm start from a snapshot, tests)."""
        self._entries[key] = CacheEntry(data=data, timestamp=self._clock() if timestamp is None else timestamp, ttl=float(self.ttl_seconds[kind]))

    @property
    def size(self) -> int:
        return len(self._entries)

    def budget_health(self, remaining: Optional[int] = None) -> str:
        remaining = self.budget.remaining if remaining is None else remaining
        if remaining > int(MARKET_DATA_SETTINGS["warning_remaining"]):  # type: ignore[arg-type]
            return "healthy"
        if remaining > int(MARKET_DATA_SETTINGS["critical_remaining"]):  # type: ignore[arg-type]
            return "warning"
        return "critical"

    def stats(self) -> dict:
        budget = self.budget.snapshot()
        lookups = self.hits + self.misses
        return {
            "size": self.size,
            "daily_call_count": budget["count"],
            "remaining_calls": budget["remaining"],
            "daily_limit": budget["limit"],
            "reset_date": budget["reset_date"],
            "usage_percentage": round(budget["count"] / budget["limit"] * 100, 1) if budget["limit"] else 100.0,
            "status": self.budget_health(budget["remaining"]),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / lookups, 3) if lookups else 0.0,
            "coalesced": self.coalesced,
            "stale_served": self.stale_served,
            "in_flight": len(self._in_flight),
        }


def create_market_data_cache(settings: dict | None = None) -> MarketDataCache:
    cfg = settings if settings is not None else MARKET_DATA_SETTINGS
    if not cfg.get("api_key"):
        logger.warning("FMP_API_KEY not set; market data will only be served from cache")
    return MarketDataCache(
        cfg.get("api_key"),  # type: ignore[arg-type]
        base_url=cfg.get("base_url"),  # type: ignore[arg-type]
        daily_call_budget=cfg.get("daily_call_budget"),  # type: ignore[arg-type]
        ttl_seconds=cfg.get("ttl_seconds"),  # type: ignore[arg-type]
        request_timeout_seconds=cfg.get("request_timeout_seconds"),  # type: ignore[arg-type]
        user_agent=cfg.get("user_agent"),  # type: ignore[arg-type]
    )


__all__ = [
    "MarketDataCache",
    "MarketDataError",
    "BudgetExhaustedError",
    "UpstreamError",
    "CacheEntry",
    "make_cache_key",
    "normalize_symbols",
    "create_market_data_cache",
]
