"""Recommendation job record and lifecycle rules."""
from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from advisor.jobs.errors import InvalidTransitionError
from advisor.utils.time import utc_now

_ID_ALPHABET = string.digits + string.ascii_lowercase


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# current -> statuses it may move to
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

# Fields callers may merge through update_job; id and created_at are immutable.
UPDATABLE_FIELDS = frozenset({"status", "result", "error"})


def generate_job_id() -> str:
    """``job_<epoch ms>_<13 base36 chars>`` (~67 random bits per millisecond)."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(13))
    return f"job_{int(time.time() * 1000)}_{suffix}"


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


@dataclass(slots=True)
class Job:
    id: str
    status: JobStatus
    payload: Any
    created_at: datetime
    updated_at: datetime
    result: Any = None
    error: Optional[str] = None

    @classmethod
    def new(cls, payload: Any, *, now: datetime | None = None) -> "Job":
        ts = now or utc_now()
        return cls(id=generate_job_id(), status=JobStatus.PENDING, payload=payload, created_at=ts, updated_at=ts)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def age_seconds(self, now: datetime | None = None) -> float:
        return ((now or utc_now()) - self.created_at).total_seconds()

    def with_updates(self, updates: dict[str, Any], *, now: datetime | None = None) -> "Job":
        """Return a copy with ``updates`` merged; enforces the status state machine."""
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update job fields: {sorted(unknown)}")
        status = self.status
        if "status" in updates:
            requested = JobStatus(updates["status"])
            if requested != self.status and requested not in ALLOWED_TRANSITIONS[self.status]:
                raise InvalidTransitionError(self.id, self.status.value, requested.value)
            status = requested
        return Job(
            id=self.id,
            status=status,
            payload=self.payload,
            created_at=self.created_at,
            updated_at=now or utc_now(),
            result=updates.get("result", self.result),
            error=updates.get("error", self.error),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "status": self.status.value,
            "payload": self.payload,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        return cls(
            id=str(data["id"]),
            status=JobStatus(data["status"]),
            payload=data.get("payload"),
            created_at=_parse_ts(data["createdAt"]),
            updated_at=_parse_ts(data.get("updatedAt", data["createdAt"])),
            result=data.get("result"),
            error=data.get("error"),
        )


__all__ = [
    "Job",
    "JobStatus",
    "TERMINAL_STATUSES",
    "ALLOWED_TRANSITIONS",
    "generate_job_id",
]
