"""
Centralized logging configuration.

Every module logs through ``get_logger(__name__)`` which returns a
``StructuredLogger``: a thin wrapper that turns keyword arguments into
structured fields. Console output renders them as ``key=value`` pairs, the
optional log file receives one JSON document per line.

Two dedicated channels sit under the ``advisor`` namespace:
  - ``advisor.audit``       job lifecycle and admin actions (log_business_event)
  - ``advisor.performance`` timings of upstream calls and job runs (log_performance)
"""
import logging
import logging.config
import json
import sys
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

# third-party loggers routed through the same handlers, with their floor level
MANAGED_LOGGERS: Dict[str, Optional[str]] = {
    "advisor": None,  # follows the configured level
    "uvicorn": "INFO",
    "aiohttp": "WARNING",
}

class JSONFormatter(logging.Formatter):
    """One JSON object per record; structured fields are merged at top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(getattr(record, "fields", None) or {})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)

class KeyValueFormatter(logging.Formatter):
    """Console formatter that appends structured fields as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "fields", None)
        if fields:
            line += " | " + " ".join(f"{k}={v}" for k, v in fields.items())
        return line

class StructuredLogger:
    """
    Wrapper around a standard logger: ``logger.info("Job completed", job_id=...)``.

    ``bind(**context)`` returns a logger that stamps the given fields on every
    record, e.g. one per job run. ``None`` valued fields are dropped.
    """

    def __init__(self, name: str, context: Optional[Dict[str, Any]] = None):
        self.logger = logging.getLogger(name)
        self.context: Dict[str, Any] = dict(context or {})

    def bind(self, **context: Any) -> "StructuredLogger":
        return StructuredLogger(self.logger.name, {**self.context, **context})

    def log(self, level: int, message: str, **fields: Any) -> None:
        if not self.logger.isEnabledFor(level):
            return
        exc_info = fields.pop("exc_info", None)
        merged = {k: v for k, v in {**self.context, **fields}.items() if v is not None}
        self.logger.log(level, message, exc_info=exc_info, extra={"fields": merged})

    def debug(self, message: str, **fields: Any) -> None:
        self.log(logging.DEBUG, message, **fields)

    def info(self, message: str, **fields: Any) -> None:
        self.log(logging.INFO, message, **fields)

    def warning(self, message: str, **fields: Any) -> None:
        self.log(logging.WARNING, message, **fields)

    def error(self, message: str, **fields: Any) -> None:
        self.log(logging.ERROR, message, **fields)

def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True
) -> None:
    """
    Configure the ``advisor`` hierarchy plus the server/client libraries.

    Args:
        log_level: Level for application loggers and handlers
        log_file: Optional path of a rotating JSON-lines log
        enable_console: Emit key=value lines on stdout
    """
    handlers: Dict[str, Dict[str, Any]] = {}
    if enable_console:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "console",
            "level": log_level,
        }
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,  # 10MB
            "backupCount": 5,
            "formatter": "json",
            "level": log_level,
        }

    names = list(handlers)
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JSONFormatter},
            "console": {
                "()": KeyValueFormatter,
                "format": "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": {
            name: {"level": level or log_level, "handlers": names, "propagate": False}
            for name, level in MANAGED_LOGGERS.items()
        },
        "root": {"level": log_level, "handlers": names},
    })

def get_logger(name: str) -> StructuredLogger:
    """Structured logger under the ``advisor`` namespace (``__name__`` already is)."""
    if name == "advisor" or name.startswith("advisor."):
        return StructuredLogger(name)
    return StructuredLogger(f"advisor.{name}")

_audit = get_logger("audit")
_perf = get_logger("performance")

def log_business_event(
    event_type: str,
    details: Dict[str, Any],
    job_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> None:
    """
    Record an audit event (job enqueued/completed/failed, processor restarted).

    Args:
        event_type: Short snake_case event name
        details: Event-specific fields
        job_id: Job the event concerns, if any
        request_id: HTTP request that caused it, if any
    """
    _audit.info(f"event:{event_type}", event_type=event_type, job_id=job_id, request_id=request_id, **details)

def log_performance(
    operation: str,
    duration_ms: float,
    additional_data: Optional[Dict[str, Any]] = None
) -> None:
    """Record how long ``operation`` took."""
    _perf.info(
        f"timing:{operation}",
        operation=operation,
        duration_ms=round(duration_ms, 2),
        **(additional_data or {})
    )
