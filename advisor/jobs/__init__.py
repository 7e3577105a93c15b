"""Asynchronous recommendation job subsystem (store, processor, services)."""
from .errors import InvalidTransitionError, JobNotFoundError, JobStoreError, JobTimeoutError
from .models import Job, JobStatus
from .processor import JobProcessor
from .registry import JobServices
from .store import FileJobStore, JobStore, MemoryJobStore, RedisJobStore, create_job_store, open_job_store

__all__ = [
    "Job",
    "JobStatus",
    "JobStore",
    "FileJobStore",
    "MemoryJobStore",
    "RedisJobStore",
    "create_job_store",
    "open_job_store",
    "JobProcessor",
    "JobServices",
    "JobNotFoundError",
    "JobStoreError",
    "InvalidTransitionError",
    "JobTimeoutError",
]
