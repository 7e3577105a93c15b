"""
Recommendation job request/response schemas.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field, ConfigDict

class JobAge(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    seconds: int
    minutes: int
    human_readable: str = Field(alias="humanReadable")

class EnqueueResponse(BaseModel):
    """Returned immediately after a recommendation request is queued."""
    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(alias="requestId")
    status: Literal["pending", "processing", "completed", "failed"] = "pending"
    message: str = "Recommendation generation queued"
    dispatched: bool = False

class JobStatusResponse(BaseModel):
    """Poll result for a single job."""
    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(alias="requestId")
    status: Literal["pending", "processing", "completed", "failed"]
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")
    job_age: JobAge = Field(alias="jobAge")
    result: Optional[Any] = None
    error: Optional[str] = None
    message: Optional[str] = None
    warning: Optional[str] = None

class StuckJob(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    status: str
    age_minutes: int = Field(alias="ageMinutes")

class QueueStatusResponse(BaseModel):
    """Admin view of the queue and processor."""
    model_config = ConfigDict(populate_by_name=True)

    counts: Dict[str, int]
    total_jobs: int = Field(alias="totalJobs")
    store_backend: str = Field(alias="storeBackend")
    stuck_jobs: List[StuckJob] = Field(default_factory=list, alias="stuckJobs")
    processor: Dict[str, Any]
    recommendation: str
    timestamp: datetime

class MarketDataBatchRequest(BaseModel):
    """POST body for the batch market data endpoint."""
    symbols: List[str] = Field(min_length=1)
    type: Literal["quote", "news", "historical"] = "quote"
    limit: int = Field(default=10, ge=1, le=100)
    days: int = Field(default=30, ge=1, le=3650)
