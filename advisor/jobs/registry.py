"""Process-wide job services (composition root).

``JobServices`` owns the single job store and the single processor for the
life of the server process. The FastAPI lifespan creates one instance and
stores it on ``app.state``; endpoints reach it through ``get_job_services``.
Nothing here lives in module globals, so tests build isolated instances.

``ensure_started`` may be called from any request path, concurrently and
repeatedly: the check-and-set sits under one lock so at most one processor is
ever constructed and started.
"""
from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Callable

from advisor.config import RETENTION_SETTINGS
from advisor.jobs.processor import JobProcessor, RecommendationGenerator
from advisor.jobs.store import JobStore, create_job_store
from advisor.utils import get_logger

logger = get_logger(__name__)


class JobServices:
    def __init__(
        self,
        generator: RecommendationGenerator,
        *,
        store_factory: Callable[[], JobStore] = create_job_store,
        processor_settings: dict | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._generator = generator
        self._store_factory = store_factory
        self._processor_settings = processor_settings
        self._clock = clock
        self._lock = threading.RLock()
        self._store: JobStore | None = None
        self._processor: JobProcessor | None = None
        self._cleanup_tasks: dict[str, asyncio.Task] = {}
        self.restart_count = 0

    @property
    def store(self) -> JobStore:
        with self._lock:
            if self._store is None:
                self._store = self._store_factory()
            return self._store

    @property
    def processor(self) -> JobProcessor:
        with self._lock:
            if self._processor is None:
                self._processor = self._build_processor()
            return self._processor

    def _build_processor(self) -> JobProcessor:
        return JobProcessor(self.store, self._generator, settings=self._processor_settings, clock=self._clock)

    def ensure_started(self, interval: float | None = None) -> JobProcessor:
        """Guarantee the processor loop runs; safe to call from every request."""
        with self._lock:
            processor = self.processor
            if not processor.is_active:
                processor.start(interval)
                logger.info("ensure_started: processor is running")
            return processor

    def restart(self, interval: float | None = None) -> JobProcessor:
        """Stop the current processor and start a fresh one bound to the same store."""
        with self._lock:
            old = self._processor
            if old is not None:
                old.stop()
            self._processor = self._build_processor()
            self._processor.start(interval or (old.poll_interval_seconds if old else None))
            self.restart_count += 1
            logger.warning("Job processor restarted", restart_count=self.restart_count)
            return self._processor

    def schedule_cleanup(self, job_id: str, delay_seconds: float | None = None) -> bool:
        """Delete a terminal job after the retention grace period; one timer per job."""
        delay = float(delay_seconds if delay_seconds is not None else RETENTION_SETTINGS["terminal_job_grace_seconds"])
        with self._lock:
            if job_id in self._cleanup_tasks:
                return False
            task = asyncio.get_running_loop().create_task(self._delete_later(job_id, delay), name=f"cleanup-{job_id}")
            self._cleanup_tasks[job_id] = task
        return True

    async def _delete_later(self, job_id: str, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            self.store.delete_job(job_id)
            logger.info("Cleaned up terminal job", job_id=job_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Failed to clean up job", job_id=job_id, error=str(e))
        finally:
            with self._lock:
                self._cleanup_tasks.pop(job_id, None)

    @property
    def pending_cleanups(self) -> int:
        with self._lock:
            return len(self._cleanup_tasks)

    async def shutdown(self, *, wait: bool = False) -> None:
        with self._lock:
            processor = self._processor
            cleanups = list(self._cleanup_tasks.values())
        if processor is not None:
            processor.stop()
            if wait:
                await processor.drain()
        for task in cleanups:
            task.cancel()
        logger.info("Job services shut down")


__all__ = ["JobServices"]
