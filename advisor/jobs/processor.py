"""Background processor draining pending recommendation jobs.

One asyncio task runs the poll loop: every ``poll_interval_seconds`` it lists
pending jobs, picks a bounded batch and dispatches each job as its own task.
The tick only decides *what* to run; it never awaits job completion, so a slow
or failing job cannot hold up the loop or its siblings.

Batch policy per tick (``select_batch``):
  1. Drop jobs already in the currently-processing set.
  2. Admit up to ``stuck_batch_size`` stuck jobs (age > ``stuck_threshold_seconds``).
  3. Admit up to ``regular_batch_size`` more from what is left, oldest first,
     so stuck jobs beyond the first quota still precede fresh ones.

Per-job lifecycle: claim id -> pending? -> mark processing -> generator under
``job_timeout_seconds`` -> completed(result) | failed(error) -> release id.
The release always happens, including when the store write fails.

Timeouts use ``asyncio.wait_for``: the generator coroutine is cancelled at its
next await. Work the generator pushed into a thread (``asyncio.to_thread``)
is not interruptible and keeps running after the job is marked failed.
"""
from __future__ import annotations

import asyncio
import threading
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional

from advisor.config import PROCESSOR_SETTINGS
from advisor.jobs.errors import JobTimeoutError
from advisor.jobs.models import Job, JobStatus
from advisor.jobs.store import JobStore
from advisor.utils import get_logger, log_business_event, log_performance
from advisor.utils.time import utc_now

logger = get_logger(__name__)

RecommendationGenerator = Callable[[Any], Awaitable[Any]]


class JobProcessor:
    def __init__(
        self,
        store: JobStore,
        generator: RecommendationGenerator,
        *,
        settings: dict | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        cfg = dict(PROCESSOR_SETTINGS)
        cfg.update(settings or {})
        self.store = store
        self.generator = generator
        self.poll_interval_seconds = float(cfg["poll_interval_seconds"])
        self.stuck_threshold_seconds = float(cfg["stuck_threshold_seconds"])
        self.stuck_batch_size = int(cfg["stuck_batch_size"])
        self.regular_batch_size = int(cfg["regular_batch_size"])
        self.job_timeout_seconds = float(cfg["job_timeout_seconds"])
        self.inactivity_window_seconds = float(cfg["inactivity_window_seconds"])
        self.max_in_flight = int(cfg["max_in_flight"])
        self._clock = clock or utc_now

        self._lock = threading.Lock()
        self._currently_processing: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._loop_task: asyncio.Task | None = None
        self._active = False

        self.started_at: datetime | None = None
        self.last_activity: datetime | None = None
        self.processed_count = 0
        self.completed_count = 0
        self.failed_count = 0

    # ----------------------------- control ----------------------------- #
    @property
    def is_active(self) -> bool:
        return self._active

    def start(self, interval: float | None = None) -> bool:
        """Start the poll loop on the running event loop; no-op when already running."""
        if self._active:
            logger.info("Job processor already running")
            return False
        loop = asyncio.get_running_loop()
        if interval is not None:
            self.poll_interval_seconds = float(interval)
        self._active = True
        self.started_at = self._clock()
        self._loop_task = loop.create_task(self._run(), name="job-processor-loop")
        logger.info("Job processor started", poll_interval_seconds=self.poll_interval_seconds)
        return True

    def stop(self) -> None:
        """Cancel the poll loop. Jobs already dispatched finish (or fail) on their own."""
        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()
        self._loop_task = None
        was_active = self._active
        self._active = False
        if was_active:
            logger.info("Job processor stopped", in_flight=len(self._tasks))

    async def drain(self) -> None:
        """Wait for every dispatched job task to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self) -> None:
        while self._active:
            try:
                await self.tick()
            except Exception as e:  # one bad tick must not end the loop
                logger.error("Job processor tick failed", error=str(e), exc_info=True)
            await asyncio.sleep(self.poll_interval_seconds)

    # ----------------------------- scheduling ----------------------------- #
    def select_batch(self, pending: Iterable[Job], now: datetime | None = None) -> list[Job]:
        """Pick this tick's jobs from oldest-first ``pending``: stuck quota first, then the rest."""
        now = now or self._clock()
        with self._lock:
            busy = set(self._currently_processing)
        candidates = [j for j in pending if j.id not in busy]
        stuck = [j for j in candidates if j.age_seconds(now) > self.stuck_threshold_seconds]
        batch = stuck[: self.stuck_batch_size]
        chosen = {j.id for j in batch}
        remainder = [j for j in candidates if j.id not in chosen]
        batch.extend(remainder[: self.regular_batch_size])
        return batch

    async def tick(self) -> list[str]:
        """Run one poll cycle; returns the ids dispatched."""
        pending = self.store.get_jobs_by_status(JobStatus.PENDING)
        if not pending:
            return []
        now = self._clock()
        batch = self.select_batch(pending, now)
        stuck_count = sum(1 for j in pending if j.age_seconds(now) > self.stuck_threshold_seconds)
        if stuck_count:
            logger.warning("Stuck pending jobs detected", stuck=stuck_count, pending=len(pending))
        for job in batch:
            self._dispatch(job.id)
        if batch:
            logger.info("Dispatched pending jobs", dispatched=len(batch), pending=len(pending))
        return [j.id for j in batch]

    def process_job_immediately(self, job_id: str) -> bool:
        """Dispatch one pending job now instead of waiting for the next tick.

        Returns False without dispatching when the job is unknown, not pending,
        or already claimed by this processor.
        """
        if self.is_processing(job_id):
            logger.info("Immediate dispatch skipped, job already processing", job_id=job_id)
            return False
        try:
            job = self.store.get_job(job_id)
        except ValueError:
            job = None
        if job is None or job.status != JobStatus.PENDING:
            logger.info(
                "Immediate dispatch skipped, job not pending",
                job_id=job_id,
                status=job.status.value if job else None
            )
            return False
        self._dispatch(job_id)
        logger.info("Job dispatched immediately", job_id=job_id)
        return True

    def _dispatch(self, job_id: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._run_job_safely(job_id), name=f"job-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_job_safely(self, job_id: str) -> None:
        try:
            await self.process_job(job_id)
        except Exception as e:
            logger.error("Job processing crashed", job_id=job_id, error=str(e), exc_info=True)

    # ----------------------------- per job ----------------------------- #
    def _claim(self, job_id: str) -> bool:
        with self._lock:
            if job_id in self._currently_processing:
                return False
            self._currently_processing.add(job_id)
            return True

    def _release(self, job_id: str) -> None:
        with self._lock:
            self._currently_processing.discard(job_id)

    def is_processing(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._currently_processing

    @property
    def currently_processing(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._currently_processing)

    async def _generate(self, job: Job) -> Any:
        try:
            result = await asyncio.wait_for(self.generator(job.payload), timeout=self.job_timeout_seconds)
        except asyncio.TimeoutError:
            raise JobTimeoutError(job.id, self.job_timeout_seconds) from None
        if result is None:
            raise ValueError("Recommendation generator returned no result")
        return result

    async def process_job(self, job_id: str) -> Optional[Job]:
        """Process one job end to end. Returns the terminal job, or None when skipped."""
        log = logger.bind(job_id=job_id)
        if not self._claim(job_id):
            log.debug("Job already processing, skipping")
            return None
        try:
            job = self.store.get_job(job_id)
            if job is None:
                log.warning("Job vanished before processing")
                return None
            if job.status != JobStatus.PENDING:
                log.debug("Job not pending, skipping", status=job.status.value)
                return None

            self.store.update_job(job_id, {"status": JobStatus.PROCESSING})
            log.info("Processing job", age_seconds=round(job.age_seconds(self._clock()), 1))
            started = time.perf_counter()
            try:
                result = await self._generate(job)
                # a result the store cannot persist fails the job like any other error
                final = self.store.update_job(job_id, {"status": JobStatus.COMPLETED, "result": result})
            except Exception as e:
                message = str(e) or type(e).__name__
                final = self.store.update_job(job_id, {"status": JobStatus.FAILED, "error": message})
                self.failed_count += 1
                log.error("Job failed", error=message, error_type=type(e).__name__)
                log_business_event("job_failed", {"error": message}, job_id=job_id)
            else:
                self.completed_count += 1
                log.info("Job completed")
                log_business_event("job_completed", {}, job_id=job_id)
            finally:
                self.processed_count += 1
                self.last_activity = self._clock()
                log_performance("process_job", (time.perf_counter() - started) * 1000, {"job_id": job_id})
            return final
        finally:
            self._release(job_id)

    # ----------------------------- introspection ----------------------------- #
    def status(self) -> dict:
        now = self._clock()
        with self._lock:
            in_flight_ids = sorted(self._currently_processing)
        return {
            "active": self._active,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
            "last_activity_age_seconds": round((now - self.last_activity).total_seconds(), 1) if self.last_activity else None,
            "processed_count": self.processed_count,
            "completed_count": self.completed_count,
            "failed_count": self.failed_count,
            "in_flight": len(in_flight_ids),
            "in_flight_ids": in_flight_ids,
            "poll_interval_seconds": self.poll_interval_seconds,
        }

    def health(self, pending_count: int = 0) -> dict:
        """Status plus a verdict: unhealthy when idle with work waiting or when in-flight piles up."""
        snapshot = self.status()
        issues: list[str] = []
        if not self._active:
            issues.append("processor loop is not running")
        reference = self.last_activity or self.started_at
        if self._active and pending_count > 0 and reference is not None:
            idle = (self._clock() - reference).total_seconds()
            if idle > self.inactivity_window_seconds:
                issues.append(f"no activity for {int(idle)}s with {pending_count} pending job(s)")
        if snapshot["in_flight"] > self.max_in_flight:
            issues.append(f"{snapshot['in_flight']} jobs in flight exceeds {self.max_in_flight}")
        return {"healthy": not issues, "issues": issues, **snapshot}


__all__ = ["JobProcessor", "RecommendationGenerator"]
