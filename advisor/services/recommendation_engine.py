"""Rule-based recommendation generator used by the job processor.

The processor treats this as an opaque ``async (payload) -> result`` callable;
any exception raised here marks the job failed with the exception message.

Pipeline:
  1. Parse the stored payload into ``UserProfile``.
  2. Resolve interest sectors into a bounded candidate universe.
  3. Pull quotes (required) and headlines (best effort) through the shared
     ``MarketDataCache`` so the daily call budget is respected.
  4. Split capital across sectors, then evenly inside each sector.
  5. Attach a deterministic projection (weighted return / volatility tables).
"""
from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from advisor.models.schemas.profile import UserProfile
from advisor.services.market_data import MarketDataCache
from advisor.utils import get_logger

logger = get_logger(__name__)

SECTOR_UNIVERSE: dict[str, list[str]] = {
    "Technology": ["AAPL", "MSFT", "NVDA"],
    "Healthcare": ["JNJ", "UNH", "PFE"],
    "Financials": ["JPM", "V", "BAC"],
    "Energy": ["XOM", "CVX"],
    "Utilities": ["NEE", "DUK"],
    "Consumer": ["AMZN", "PG", "KO"],
    "ETF": ["VOO", "VTI", "QQQ"],
    "Bonds": ["BND", "AGG"],
    "International": ["VXUS", "EFA"],
}

SECTOR_EXPECTED_RETURN: dict[str, float] = {
    "Technology": 0.12,
    "Healthcare": 0.10,
    "Financials": 0.09,
    "Energy": 0.11,
    "Utilities": 0.06,
    "Consumer": 0.08,
    "ETF": 0.08,
    "Bonds": 0.04,
    "International": 0.07,
}

SECTOR_VOLATILITY: dict[str, float] = {
    "Technology": 0.25,
    "Healthcare": 0.18,
    "Financials": 0.20,
    "Energy": 0.30,
    "Utilities": 0.12,
    "Consumer": 0.16,
    "ETF": 0.15,
    "Bonds": 0.08,
    "International": 0.18,
}

DEFAULT_SECTORS = ["ETF", "Technology", "Healthcare"]
MAX_SYMBOLS = 8


def resolve_sectors(profile: UserProfile) -> list[str]:
    lookup = {name.lower(): name for name in SECTOR_UNIVERSE}
    sectors: list[str] = []
    for raw in profile.sectors:
        name = lookup.get(raw.strip().lower())
        if name and name not in sectors:
            sectors.append(name)
    if not sectors:
        sectors = list(DEFAULT_SECTORS)
    if profile.risk_tolerance <= 3 and "Bonds" not in sectors:
        sectors.append("Bonds")
    return sectors


def pick_symbols(sectors: list[str], risk_tolerance: int) -> dict[str, str]:
    """symbol -> sector, two names per sector for higher risk appetites."""
    per_sector = 2 if risk_tolerance >= 5 else 1
    chosen: dict[str, str] = {}
    for sector in sectors:
        for symbol in SECTOR_UNIVERSE[sector][:per_sector]:
            if len(chosen) >= MAX_SYMBOLS:
                return chosen
            chosen.setdefault(symbol, sector)
    return chosen


def project_portfolio(recommendations: list[dict]) -> dict[str, Any]:
    buys = [r for r in recommendations if r["type"] == "buy" and r["amount"] > 0]
    total = sum(r["amount"] for r in buys)
    if total == 0:
        return {
            "totalInvestment": 0,
            "projectedValues": {"oneYear": 0, "threeYear": 0, "fiveYear": 0},
            "expectedAnnualReturn": 0,
            "riskLevel": "low",
            "diversificationScore": 0,
            "sectorBreakdown": {},
        }
    weighted_return = 0.0
    weighted_volatility = 0.0
    breakdown: dict[str, float] = {}
    for rec in buys:
        weight = rec["amount"] / total
        weighted_return += rec["expectedAnnualReturn"] * weight
        weighted_volatility += rec["volatility"] * weight
        breakdown[rec["sector"]] = breakdown.get(rec["sector"], 0.0) + weight * 100

    if weighted_volatility < 0.15:
        risk_level = "low"
    elif weighted_volatility > 0.25:
        risk_level = "high"
    else:
        risk_level = "medium"
    diversification = min(100.0, len(breakdown) * 20 + (100 - max(breakdown.values())))
    return {
        "totalInvestment": round(total, 2),
        "projectedValues": {
            "oneYear": round(total * (1 + weighted_return)),
            "threeYear": round(total * (1 + weighted_return) ** 3),
            "fiveYear": round(total * (1 + weighted_return) ** 5),
        },
        "expectedAnnualReturn": round(weighted_return, 4),
        "riskLevel": risk_level,
        "diversificationScore": round(diversification),
        "sectorBreakdown": {sector: round(pct) for sector, pct in breakdown.items()},
    }


class RecommendationEngine:
    def __init__(self, market_data: MarketDataCache, *, news_limit: int = 5):
        self.market_data = market_data
        self.news_limit = news_limit

    async def __call__(self, payload: Any) -> dict[str, Any]:
        return await self.generate(payload)

    async def generate(self, payload: Any) -> dict[str, Any]:
        try:
            profile = UserProfile.model_validate(payload or {})
        except ValidationError as e:
            raise ValueError(f"Invalid user profile: {e.error_count()} validation error(s)") from e

        sectors = resolve_sectors(profile)
        symbol_sectors = pick_symbols(sectors, profile.risk_tolerance)
        quotes = await self.market_data.get_quotes(list(symbol_sectors))
        news = await self.market_data.get_news(list(symbol_sectors), limit=self.news_limit)
        by_symbol = {str(q.get("symbol", "")).upper(): q for q in quotes}

        priced = [s for s in symbol_sectors if (by_symbol.get(s) or {}).get("price")]
        if not priced:
            raise ValueError("No usable quotes for the candidate universe")
        sector_members: dict[str, list[str]] = {}
        for symbol in priced:
            sector_members.setdefault(symbol_sectors[symbol], []).append(symbol)

        capital = profile.capital_available
        sector_share = capital / len(sector_members) if sector_members else 0.0
        recommendations: list[dict[str, Any]] = []
        stale = False
        for sector, members in sector_members.items():
            for symbol in members:
                quote = by_symbol[symbol]
                price = float(quote["price"])
                amount = round(sector_share / len(members), 2)
                volatility = SECTOR_VOLATILITY.get(sector, 0.15)
                fit = 1 - abs(volatility / 0.30 - profile.risk_tolerance / 10)
                stale = stale or bool(quote.get("expired"))
                recommendations.append({
                    "symbol": symbol,
                    "name": quote.get("name") or symbol,
                    "type": "buy",
                    "sector": sector,
                    "amount": amount,
                    "price": price,
                    "shares": math.floor(amount / price) if price > 0 else 0,
                    "changesPercentage": quote.get("changesPercentage"),
                    "expectedAnnualReturn": SECTOR_EXPECTED_RETURN.get(sector, 0.08),
                    "volatility": volatility,
                    "confidence": int(round(50 + 40 * max(0.0, min(1.0, fit)))),
                })

        for holding in profile.existing_portfolio:
            if holding.amount > 0:
                recommendations.append({
                    "symbol": holding.symbol,
                    "name": f"{holding.symbol} Holdings",
                    "type": "hold",
                    "sector": "Existing",
                    "amount": holding.amount,
                    "expectedAnnualReturn": 0.08,
                    "volatility": 0.15,
                    "confidence": 60,
                })

        projection = project_portfolio(recommendations)
        logger.info(
            "Recommendations generated",
            symbols=len(priced),
            sectors=len(sector_members),
            stale_data=stale,
        )
        return {
            "recommendations": recommendations,
            "portfolioProjection": projection,
            "reasoning": (
                f"Capital split evenly across {len(sector_members)} sector(s) "
                f"({', '.join(sector_members)}) for risk tolerance {profile.risk_tolerance}/10 "
                f"over a {profile.time_horizon} horizon."
            ),
            "riskAssessment": f"Projected portfolio risk is {projection['riskLevel']}.",
            "marketOutlook": [item.get("title") for item in news[: self.news_limit] if item.get("title")],
            "dataFreshness": "stale" if stale else "fresh",
            "generatedAt": datetime.now(timezone.utc).isoformat(),
        }


__all__ = ["RecommendationEngine", "resolve_sectors", "pick_symbols", "project_portfolio"]
