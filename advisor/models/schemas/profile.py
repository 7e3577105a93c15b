"""
Investor profile schema.

Job payloads are stored opaquely; this is the only place they are parsed into
a typed structure (inside the recommendation engine).
"""
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

class Holding(BaseModel):
    """A position the investor already owns."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    symbol: str = Field(min_length=1)
    amount: float = Field(default=0.0, ge=0)
    type: Optional[str] = Field(default=None, description="stock | etf | crypto | other")

    @field_validator("symbol")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.strip().upper()

class UserProfile(BaseModel):
    """Questionnaire answers driving a recommendation run."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    risk_tolerance: int = Field(default=5, ge=1, le=10, alias="riskTolerance")
    capital_available: float = Field(default=0.0, ge=0, alias="capitalAvailable")
    time_horizon: str = Field(default="medium", alias="timeHorizon")
    growth_type: str = Field(default="balanced", alias="growthType")
    sectors: List[str] = Field(default_factory=list)
    ethical_investing: int = Field(default=5, ge=0, le=10, alias="ethicalInvesting")
    existing_portfolio: List[Holding] = Field(default_factory=list, alias="existingPortfolio")
