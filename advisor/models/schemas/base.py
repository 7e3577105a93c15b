"""
Shared response envelope for the admin and market data endpoints.
"""
from datetime import datetime
from typing import Optional, Any, Dict
from pydantic import BaseModel, Field
from advisor.utils.time import utc_now

class ResponseBase(BaseModel):
    """``{success, message, timestamp, data}``; ``data`` carries the endpoint payload."""
    success: bool = True
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)
    data: Dict[str, Any] = Field(default_factory=dict)
