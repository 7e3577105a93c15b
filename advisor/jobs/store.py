"""Durable job stores.

All backends share the ``JobStore`` contract:

    add_job(payload) -> job_id              create a pending job; write failures propagate
    get_job(job_id) -> Job | None           not-found is a normal outcome
    update_job(job_id, updates) -> Job      merge status/result/error, refresh updated_at;
                                            JobNotFoundError for unknown ids
    get_jobs_by_status(status) -> [Job]     oldest created_at first
    delete_job(job_id) -> None              idempotent

Backends:
  - FileJobStore  : one ``<job_id>.json`` document per job (reference backend).
  - RedisJobStore : one JSON string per job + one set index per status.
  - MemoryJobStore: process-local dict; used directly in tests and as the
                    fallback whenever the configured backend cannot be opened.

``open_job_store`` never raises for an unavailable backend. It returns a
``StoreOutcome`` describing which store was selected and why; durability is
best-effort, so a read-only filesystem or unreachable Redis degrades to memory
with a logged warning instead of failing process startup.
"""
from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Protocol

try:
    import redis
    REDIS_AVAILABLE = True
except ImportError:
    redis = None  # type: ignore[assignment]
    REDIS_AVAILABLE = False

from advisor.config import JOB_STORE_SETTINGS
from advisor.jobs.errors import JobNotFoundError, JobStoreError
from advisor.jobs.models import Job, JobStatus
from advisor.utils import get_logger
from advisor.utils.time import utc_now

logger = get_logger(__name__)

Clock = Callable[[], Any]


class JobStore(Protocol):
    backend: str

    def add_job(self, payload: Any) -> str: ...
    def get_job(self, job_id: str) -> Optional[Job]: ...
    def update_job(self, job_id: str, updates: dict[str, Any]) -> Job: ...
    def get_jobs_by_status(self, status: JobStatus | str) -> list[Job]: ...
    def delete_job(self, job_id: str) -> None: ...
    def count_by_status(self) -> dict[str, int]: ...
    def ping(self) -> bool: ...


def _sorted_oldest_first(jobs: Iterable[Job]) -> list[Job]:
    return sorted(jobs, key=lambda j: (j.created_at, j.id))


def _empty_counts() -> dict[str, int]:
    return {s.value: 0 for s in JobStatus}


# ----------------------------- memory backend ----------------------------- #
class MemoryJobStore:
    backend = "memory"

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock or utc_now
        self._jobs: dict[str, Job] = {}
        self._lock = threading.RLock()

    def add_job(self, payload: Any) -> str:
        job = Job.new(copy.deepcopy(payload), now=self._clock())
        with self._lock:
            self._jobs[job.id] = job
        logger.info("Job added to memory store", job_id=job.id)
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def update_job(self, job_id: str, updates: dict[str, Any]) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            updated = job.with_updates(copy.deepcopy(updates), now=self._clock())
            self._jobs[job_id] = updated
            return copy.deepcopy(updated)

    def get_jobs_by_status(self, status: JobStatus | str) -> list[Job]:
        wanted = JobStatus(status)
        with self._lock:
            return _sorted_oldest_first(copy.deepcopy(j) for j in self._jobs.values() if j.status == wanted)

    def delete_job(self, job_id: str) -> None:
        with self._lock:
            if self._jobs.pop(job_id, None) is not None:
                logger.info("Job deleted from memory store", job_id=job_id)

    def count_by_status(self) -> dict[str, int]:
        counts = _empty_counts()
        with self._lock:
            counts.update(Counter(j.status.value for j in self._jobs.values()))
        return counts

    def ping(self) -> bool:
        return True

    def purge(self) -> None:
        """Drop every job (test isolation)."""
        with self._lock:
            self._jobs.clear()


# ------------------------------ file backend ------------------------------ #
class FileJobStore:
    backend = "file"

    def __init__(self, directory: str | os.PathLike[str], *, clock: Clock | None = None) -> None:
        self.directory = Path(directory)
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        # Raises OSError when the location is not usable; open_job_store handles it.
        self.directory.mkdir(parents=True, exist_ok=True)
        probe = tempfile.NamedTemporaryFile(dir=self.directory, prefix=".probe-", delete=False)
        probe.close()
        os.unlink(probe.name)

    def _path(self, job_id: str) -> Path:
        if not job_id or "/" in job_id or "\\" in job_id or job_id.startswith("."):
            raise ValueError(f"Invalid job id {job_id!r}")
        return self.directory / f"{job_id}.json"

    def _write(self, job: Job) -> None:
        path = self._path(job.id)
        try:
            body = json.dumps(job.to_dict(), indent=2)
        except (TypeError, ValueError) as e:
            raise JobStoreError(f"Job {job.id} is not JSON serializable: {e}") from e
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{job.id}-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(body)
            os.replace(tmp_name, path)
        except OSError as e:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise JobStoreError(f"Failed to write job {job.id}: {e}") from e

    def _read(self, path: Path) -> Job:
        # FileNotFoundError propagates; undecodable bytes are a corrupt document.
        try:
            return Job.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (ValueError, KeyError, TypeError) as e:
            raise JobStoreError(f"Corrupt job file {path.name}: {e}") from e

    def add_job(self, payload: Any) -> str:
        job = Job.new(payload, now=self._clock())
        with self._lock:
            self._write(job)
        logger.info("Job added to file store", job_id=job.id)
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        try:
            return self._read(self._path(job_id))
        except FileNotFoundError:
            return None

    def update_job(self, job_id: str, updates: dict[str, Any]) -> Job:
        with self._lock:
            job = self.get_job(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            updated = job.with_updates(updates, now=self._clock())
            self._write(updated)
        logger.debug("Job updated in file store", job_id=job_id, status=updated.status.value)
        return updated

    def _iter_jobs(self) -> Iterable[Job]:
        try:
            paths = sorted(self.directory.glob("*.json"))
        except OSError as e:
            raise JobStoreError(f"Cannot list job directory {self.directory}: {e}") from e
        for path in paths:
            try:
                yield self._read(path)
            except FileNotFoundError:
                continue  # deleted between listing and reading
            except (OSError, JobStoreError) as e:
                logger.warning("Skipping unreadable job file", file=path.name, error=str(e))

    def get_jobs_by_status(self, status: JobStatus | str) -> list[Job]:
        wanted = JobStatus(status)
        return _sorted_oldest_first(j for j in self._iter_jobs() if j.status == wanted)

    def delete_job(self, job_id: str) -> None:
        with self._lock:
            try:
                self._path(job_id).unlink()
            except FileNotFoundError:
                return
        logger.info("Job deleted from file store", job_id=job_id)

    def count_by_status(self) -> dict[str, int]:
        counts = _empty_counts()
        counts.update(Counter(j.status.value for j in self._iter_jobs()))
        return counts

    def ping(self) -> bool:
        return self.directory.is_dir() and os.access(self.directory, os.W_OK)


# ------------------------------ redis backend ----------------------------- #
class RedisJobStore:
    """Jobs as JSON strings under ``<prefix><id>``; ``<prefix>status:<status>`` sets index them."""

    backend = "redis"

    def __init__(
        self,
        client: "redis.Redis",
        *,
        key_prefix: str = "advisor:job:",
        clock: Clock | None = None,
    ) -> None:
        self._redis = client
        self._prefix = key_prefix
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        # Raises redis.RedisError when unreachable; open_job_store handles it.
        self._redis.ping()

    @classmethod
    def from_url(cls, url: str, *, timeout: float = 2.0, key_prefix: str = "advisor:job:", clock: Clock | None = None) -> "RedisJobStore":
        client = redis.from_url(url, socket_connect_timeout=timeout)
        return cls(client, key_prefix=key_prefix, clock=clock)

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}{job_id}"

    def _status_key(self, status: JobStatus) -> str:
        return f"{self._prefix}status:{status.value}"

    @staticmethod
    def _decode(raw: Any) -> str:
        return raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)

    def _save(self, job: Job, previous: JobStatus | None) -> None:
        try:
            body = json.dumps(job.to_dict())
        except (TypeError, ValueError) as e:
            raise JobStoreError(f"Job {job.id} is not JSON serializable: {e}") from e
        try:
            pipe = self._redis.pipeline()
            pipe.set(self._job_key(job.id), body)
            if previous is not None and previous != job.status:
                pipe.srem(self._status_key(previous), job.id)
            pipe.sadd(self._status_key(job.status), job.id)
            pipe.execute()
        except redis.RedisError as e:
            raise JobStoreError(f"Redis write failed for job {job.id}: {e}") from e

    def add_job(self, payload: Any) -> str:
        job = Job.new(payload, now=self._clock())
        with self._lock:
            self._save(job, previous=None)
        logger.info("Job added to redis store", job_id=job.id)
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        try:
            raw = self._redis.get(self._job_key(job_id))
        except redis.RedisError as e:
            raise JobStoreError(f"Redis read failed for job {job_id}: {e}") from e
        if raw is None:
            return None
        return Job.from_dict(json.loads(self._decode(raw)))

    def update_job(self, job_id: str, updates: dict[str, Any]) -> Job:
        with self._lock:
            job = self.get_job(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            updated = job.with_updates(updates, now=self._clock())
            self._save(updated, previous=job.status)
        return updated

    def get_jobs_by_status(self, status: JobStatus | str) -> list[Job]:
        wanted = JobStatus(status)
        try:
            ids = sorted(self._decode(m) for m in self._redis.smembers(self._status_key(wanted)))
            if not ids:
                return []
            raws = self._redis.mget([self._job_key(i) for i in ids])
        except redis.RedisError as e:
            raise JobStoreError(f"Redis listing failed for status {wanted.value}: {e}") from e
        jobs: list[Job] = []
        orphaned: list[str] = []
        for job_id, raw in zip(ids, raws):
            if raw is None:
                orphaned.append(job_id)
                continue
            try:
                job = Job.from_dict(json.loads(self._decode(raw)))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping unreadable redis job", job_id=job_id, error=str(e))
                continue
            if job.status == wanted:
                jobs.append(job)
        if orphaned:
            # Index entries that outlived their records
            try:
                self._redis.srem(self._status_key(wanted), *orphaned)
            except redis.RedisError as e:
                logger.warning("Failed to prune redis status index", status=wanted.value, error=str(e))
        return _sorted_oldest_first(jobs)

    def delete_job(self, job_id: str) -> None:
        with self._lock:
            try:
                pipe = self._redis.pipeline()
                pipe.delete(self._job_key(job_id))
                for status in JobStatus:
                    pipe.srem(self._status_key(status), job_id)
                pipe.execute()
            except redis.RedisError as e:
                raise JobStoreError(f"Redis delete failed for job {job_id}: {e}") from e

    def count_by_status(self) -> dict[str, int]:
        counts = _empty_counts()
        try:
            for status in JobStatus:
                counts[status.value] = int(self._redis.scard(self._status_key(status)) or 0)
        except redis.RedisError as e:
            raise JobStoreError(f"Redis count failed: {e}") from e
        return counts

    def ping(self) -> bool:
        try:
            return bool(self._redis.ping())
        except redis.RedisError:
            return False


# --------------------------------- factory -------------------------------- #
@dataclass
class StoreOutcome:
    store: JobStore
    requested_backend: str
    fallback_reason: str | None = None

    @property
    def degraded(self) -> bool:
        return self.fallback_reason is not None


def _open_file(settings: dict, clock: Clock | None) -> StoreOutcome:
    try:
        store = FileJobStore(str(settings.get("directory", ".job-queue")), clock=clock)
    except OSError as e:
        return StoreOutcome(MemoryJobStore(clock=clock), "file", f"job directory unavailable: {e}")
    return StoreOutcome(store, "file")


def _open_redis(settings: dict, clock: Clock | None) -> StoreOutcome:
    if not REDIS_AVAILABLE:
        return StoreOutcome(MemoryJobStore(clock=clock), "redis", "redis package is not installed")
    try:
        store = RedisJobStore.from_url(
            str(settings.get("redis_url", "redis://localhost:6379/0")),
            timeout=float(settings.get("redis_health_check_timeout", 2.0)),  # type: ignore[arg-type]
            key_prefix=str(settings.get("redis_key_prefix", "advisor:job:")),
            clock=clock,
        )
    except (redis.RedisError, OSError) as e:
        return StoreOutcome(MemoryJobStore(clock=clock), "redis", f"redis unavailable: {e}")
    return StoreOutcome(store, "redis")


def open_job_store(settings: dict | None = None, *, clock: Clock | None = None) -> StoreOutcome:
    """Select a store for the configured backend, degrading to memory when it cannot be opened."""
    settings = settings if settings is not None else JOB_STORE_SETTINGS
    backend = str(settings.get("backend", "file")).lower()
    if backend == "memory":
        return StoreOutcome(MemoryJobStore(clock=clock), "memory")
    if backend == "redis":
        return _open_redis(settings, clock)
    if backend != "file":
        logger.warning("Unknown job store backend, using file store", backend=backend)
    return _open_file(settings, clock)


def create_job_store(settings: dict | None = None, *, clock: Clock | None = None) -> JobStore:
    outcome = open_job_store(settings, clock=clock)
    if outcome.degraded:
        logger.warning(
            "Job store backend unavailable, falling back to in-memory store",
            requested_backend=outcome.requested_backend,
            reason=outcome.fallback_reason,
        )
    else:
        logger.info("Job store ready", backend=outcome.store.backend)
    return outcome.store


__all__ = [
    "JobStore",
    "MemoryJobStore",
    "FileJobStore",
    "RedisJobStore",
    "StoreOutcome",
    "open_job_store",
    "create_job_store",
]
