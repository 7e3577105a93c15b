import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock
import pytest
from fastapi.testclient import TestClient

# Ensure project root on sys.path so 'advisor' package resolves without an install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from advisor import config  # type: ignore
from advisor.jobs.store import FileJobStore, MemoryJobStore  # type: ignore
from advisor.services.market_data import MarketDataCache  # type: ignore

"""Pytest fixtures.

Async code is exercised with ``asyncio.run`` inside plain test functions; the
processor and cache only need a running loop, not a plugin.
"""

T0 = datetime(2025, 1, 6, 9, 30, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock for job ages."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeTimer:
    """Manually advanced epoch-seconds clock for cache TTLs."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def timer():
    return FakeTimer()


@pytest.fixture()
def memory_store(clock):
    return MemoryJobStore(clock=clock)


@pytest.fixture()
def file_store(tmp_path, clock):
    return FileJobStore(tmp_path / "jobs", clock=clock)


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path, clock):
    """Runs a test once per store backend sharing the same contract."""
    if request.param == "memory":
        return MemoryJobStore(clock=clock)
    return FileJobStore(tmp_path / "jobs", clock=clock)


@pytest.fixture()
def market_cache(timer):
    """Cache with a stubbed upstream; set ``cache._request`` side effects per test."""
    cache = MarketDataCache("test-key", daily_call_budget=250, clock=timer)
    cache._request = AsyncMock(return_value=[{"symbol": "AAPL", "price": 190.0}])  # type: ignore[method-assign]
    return cache


def _quote_for(path: str) -> list[dict]:
    symbols = path.split("/", 1)[1].split(",")
    return [{"symbol": s, "name": f"{s} Inc", "price": 100.0, "changesPercentage": 0.5} for s in symbols]


async def fake_upstream(path: str, params: dict):
    if path.startswith("quote/"):
        return _quote_for(path)
    if path == "stock_news":
        return [{"title": "Markets drift higher", "symbol": "AAPL"}]
    if path.startswith("historical-price-full/"):
        return {"symbol": path.rsplit("/", 1)[1], "historical": [{"date": "2025-01-03", "close": 100.0}]}
    raise AssertionError(f"unexpected path {path}")


async def echo_generator(payload):
    return {"echo": payload}


@pytest.fixture()
def client(monkeypatch, timer):
    """TestClient running the real lifespan against a memory store and stubbed upstream."""
    monkeypatch.setitem(config.JOB_STORE_SETTINGS, "backend", "memory")
    monkeypatch.setitem(config.PROCESSOR_SETTINGS, "poll_interval_seconds", 0.02)
    cache = MarketDataCache("test-key", daily_call_budget=250, clock=timer)
    cache._request = AsyncMock(side_effect=fake_upstream)  # type: ignore[method-assign]

    import advisor.main as main_module  # type: ignore
    monkeypatch.setattr(main_module, "create_market_data_cache", lambda: cache)
    monkeypatch.setattr(main_module, "RecommendationEngine", lambda market_data: echo_generator)
    with TestClient(main_module.app) as test_client:
        yield test_client
