"""Core application configuration & tunable runtime rules.

Everything that may need adjusting without touching service logic (queue
backend, polling cadence, fairness quotas, timeouts, retention windows, the
market-data call budget and cache lifetimes) is centralized here. Values are
read from environment variables at import time; tests monkeypatch the dicts
directly (mutable module constants are intentional).
"""
from __future__ import annotations

import os


def _env_float(name: str, default: float) -> float:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	return float(raw)


def _env_int(name: str, default: int) -> int:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	return int(raw)


# ------------------------------- Job Store -------------------------------- #
JOB_STORE_SETTINGS: dict[str, str | float] = {
	# file | redis | memory. Unavailable backends degrade to memory.
	"backend": os.getenv("JOB_QUEUE_TYPE", "file").strip().lower(),
	"directory": os.getenv("JOB_QUEUE_DIR", os.path.join(os.getcwd(), ".job-queue")),
	"redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
	"redis_key_prefix": os.getenv("JOB_QUEUE_REDIS_PREFIX", "advisor:job:"),
	"redis_health_check_timeout": _env_float("REDIS_HEALTH_CHECK_TIMEOUT", 2.0),
}

# ------------------------------- Processor -------------------------------- #
PROCESSOR_SETTINGS: dict[str, int | float] = {
	"poll_interval_seconds": _env_float("JOB_POLL_INTERVAL_SECONDS", 1.0),
	# Pending jobs older than this are "stuck" and jump the line.
	"stuck_threshold_seconds": 120,
	"stuck_batch_size": 2,       # Stuck jobs admitted first per tick
	"regular_batch_size": 3,     # Further jobs admitted per tick (oldest first)
	"job_timeout_seconds": _env_float("JOB_TIMEOUT_SECONDS", 120.0),
	# Health: no activity in this window while work is pending => unhealthy
	"inactivity_window_seconds": 300,
	"max_in_flight": 10,
}

# ------------------------------- Retention -------------------------------- #
RETENTION_SETTINGS: dict[str, int | float] = {
	# Delay between first observing a terminal job and deleting it.
	"terminal_job_grace_seconds": _env_float("JOB_RETENTION_SECONDS", 60.0),
	# Admin status flags pending/processing jobs older than this.
	"stuck_report_seconds": 300,
	# Poll responses attach a warning past these ages.
	"pending_warning_seconds": 120,
	"processing_warning_seconds": 180,
}

# ------------------------------ Market Data ------------------------------- #
MARKET_DATA_SETTINGS: dict[str, object] = {
	"api_key": os.getenv("FMP_API_KEY") or None,
	"base_url": os.getenv("FMP_BASE_URL", "https://financialmodelingprep.com/api/v3"),
	"daily_call_budget": _env_int("FMP_DAILY_CALL_BUDGET", 250),
	"ttl_seconds": {
		"quote": 300,         # 5 minutes
		"news": 86_400,       # 24 hours
		"historical": 86_400, # 24 hours
	},
	"request_timeout_seconds": _env_float("FMP_REQUEST_TIMEOUT_SECONDS", 15.0),
	"user_agent": "Advisor/1.0",
	# Budget health classification by remaining calls
	"warning_remaining": 50,
	"critical_remaining": 10,
}

# -------------------------------- Logging --------------------------------- #
LOG_SETTINGS: dict[str, str | None] = {
	"level": os.getenv("LOG_LEVEL", "INFO"),
	"file": os.getenv("LOG_FILE") or None,
}

__all__ = [
	"JOB_STORE_SETTINGS",
	"PROCESSOR_SETTINGS",
	"RETENTION_SETTINGS",
	"MARKET_DATA_SETTINGS",
	"LOG_SETTINGS",
]
