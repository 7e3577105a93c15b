"""Clock helpers shared by the job store, processor and poll endpoints."""
from __future__ import annotations
from datetime import datetime, timezone

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def format_age(seconds: float) -> str:
    """Job age for poll responses: "3m 12s" past a minute, "45s" below."""
    total = max(0, int(round(seconds)))
    minutes, secs = divmod(total, 60)
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"

__all__ = ["utc_now", "format_age"]
