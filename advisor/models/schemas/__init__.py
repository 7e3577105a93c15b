"""
Pydantic schemas for request/response validation.
"""
from .base import ResponseBase
from .jobs import EnqueueResponse, JobAge, JobStatusResponse, MarketDataBatchRequest, QueueStatusResponse, StuckJob
from .profile import Holding, UserProfile

__all__ = [
    "ResponseBase",
    "EnqueueResponse",
    "JobAge",
    "JobStatusResponse",
    "QueueStatusResponse",
    "StuckJob",
    "MarketDataBatchRequest",
    "Holding",
    "UserProfile",
]
