"""Market data cache against a local aiohttp server: query string, status and body handling."""
import asyncio
import pytest
from aiohttp import web
from aiohttp import test_utils

from advisor.services.market_data import MarketDataCache, UpstreamError


def provider_app(seen: list) -> web.Application:
    async def quote(request):
        seen.append((request.match_info["symbols"], dict(request.query)))
        symbols = request.match_info["symbols"].split(",")
        return web.json_response([{"symbol": s, "price": 100.0} for s in symbols])

    async def news(request):
        seen.append(("stock_news", dict(request.query)))
        return web.Response(text="<html>maintenance</html>", content_type="text/html")

    async def historical(request):
        return web.json_response({"error": "overloaded"}, status=503)

    async def slow(request):
        await asyncio.sleep(0.3)
        return web.json_response([])

    app = web.Application()
    app.router.add_get("/quote/{symbols}", quote)
    app.router.add_get("/stock_news", news)
    app.router.add_get("/historical-price-full/{symbol}", historical)
    app.router.add_get("/slow/{symbol}", slow)
    return app


def run_against_provider(scenario, **cache_kwargs):
    """Start the provider, hand ``scenario`` a cache pointed at it, then shut down."""
    seen: list = []

    async def main():
        server = test_utils.TestServer(provider_app(seen))
        await server.start_server()
        try:
            cache = MarketDataCache(
                "secret-key",
                base_url=str(server.make_url("/")),
                daily_call_budget=250,
                **cache_kwargs,
            )
            return await scenario(cache)
        finally:
            await server.close()

    return asyncio.run(main()), seen


def test_quotes_are_fetched_with_api_key_and_sorted_symbols():
    async def scenario(cache):
        quotes = await cache.get_quotes(["msft", "AAPL"])
        return quotes, cache.budget.snapshot()["count"]

    (quotes, count), seen = run_against_provider(scenario)
    assert [q["symbol"] for q in quotes] == ["AAPL", "MSFT"]
    assert seen == [("AAPL,MSFT", {"apikey": "secret-key"})]
    assert count == 1


def test_non_2xx_status_is_an_upstream_error_and_releases_the_slot():
    async def scenario(cache):
        with pytest.raises(UpstreamError) as info:
            await cache.get_historical("AAPL", days=5)
        return info.value, cache.budget.snapshot()

    (error, snap), _ = run_against_provider(scenario)
    assert error.status == 503
    assert "503" in str(error)
    assert snap["count"] == 0
    assert snap["reserved"] == 0


def test_malformed_body_is_an_upstream_error():
    async def scenario(cache):
        with pytest.raises(UpstreamError) as info:
            await cache._fetch_json("stock_news", {"limit": 3})
        return info.value

    error, seen = run_against_provider(scenario)
    assert "malformed JSON" in str(error)
    assert error.status == 200
    assert seen == [("stock_news", {"limit": "3", "apikey": "secret-key"})]


def test_malformed_news_body_degrades_to_empty():
    async def scenario(cache):
        return await cache.get_news(["AAPL"], limit=3)

    news, seen = run_against_provider(scenario)
    assert news == []
    assert seen[0][1]["tickers"] == "AAPL"


def test_request_timeout_is_an_upstream_error():
    async def scenario(cache):
        with pytest.raises(UpstreamError) as info:
            await cache._fetch_json("slow/AAPL", {})
        return info.value, cache.budget.snapshot()["count"]

    (error, count), _ = run_against_provider(scenario, request_timeout_seconds=0.05)
    assert error.status is None
    assert count == 0
