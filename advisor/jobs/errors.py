"""Job subsystem error taxonomy."""
from __future__ import annotations


class JobNotFoundError(KeyError):
    """Raised when mutating a job id that does not exist (lookups return None instead)."""

    def __init__(self, job_id: str):
        super().__init__(job_id)
        self.job_id = job_id

    def __str__(self) -> str:
        return f"Job {self.job_id} not found"


class JobStoreError(RuntimeError):
    """Backing storage failed (unreachable, unwritable, corrupt record)."""


class InvalidTransitionError(ValueError):
    """A status update would move a job backwards or out of its terminal state."""

    def __init__(self, job_id: str, current: str, requested: str):
        super().__init__(f"Job {job_id}: cannot transition {current} -> {requested}")
        self.job_id = job_id
        self.current = current
        self.requested = requested


class JobTimeoutError(TimeoutError):
    """The per-job wall-clock limit elapsed before the generator returned."""

    def __init__(self, job_id: str, timeout_seconds: float):
        super().__init__(f"Job {job_id} timed out after {timeout_seconds:g}s")
        self.job_id = job_id
        self.timeout_seconds = timeout_seconds


__all__ = ["JobNotFoundError", "JobStoreError", "InvalidTransitionError", "JobTimeoutError"]
