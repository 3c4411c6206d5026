"""In-process job queue with priorities, delayed retry and a worker pool.

Jobs carry an attempt counter. A handler failure whose exception has
``retryable = True`` is re-queued with exponential backoff until
``max_attempts`` is reached; anything else is dead-lettered and logged.
A handler can raise JobDeferred to put a job back without spending an
attempt.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

PRIORITY_HIGH = 0
PRIORITY_NORMAL = 10


class JobDeferred(Exception):
    """Raised by a handler to retry the job later without counting an attempt."""

    def __init__(self, delay: float, reason: str = "") -> None:
        super().__init__(reason or f"deferred for {delay:g}s")
        self.delay = delay


@dataclass
class QueuedJob:
    payload: Any
    priority: int = PRIORITY_NORMAL
    max_attempts: int = 3
    attempts: int = 0
    last_error: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts >= self.max_attempts


Handler = Callable[[QueuedJob], None]


class LocalJobQueue:
    """Thread-safe priority queue (lower number runs first) with delayed jobs."""

    def __init__(
        self,
        name: str,
        *,
        max_attempts: int = 3,
        initial_backoff: float = 2.0,
        max_backoff: float = 60.0,
    ) -> None:
        self.name = name
        self._max_attempts = max_attempts
        self._initial_backoff = initial_backoff
        self._max_backoff = max_backoff
        self._ready: list[tuple[int, int, QueuedJob]] = []
        self._delayed: list[tuple[float, int, QueuedJob]] = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._active = 0
        self._stopped = False
        self._workers: list[threading.Thread] = []
        self.dead_letters: list[QueuedJob] = []

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def enqueue(
        self,
        payload: Any,
        *,
        priority: int = PRIORITY_NORMAL,
        delay: float = 0.0,
        max_attempts: int | None = None,
    ) -> QueuedJob:
        job = QueuedJob(
            payload=payload,
            priority=priority,
            max_attempts=max_attempts or self._max_attempts,
        )
        self._schedule(job, delay)
        return job

    def _schedule(self, job: QueuedJob, delay: float) -> None:
        with self._cond:
            if delay > 0:
                heapq.heappush(self._delayed, (time.monotonic() + delay, next(self._seq), job))
            else:
                heapq.heappush(self._ready, (job.priority, next(self._seq), job))
            self._cond.notify()

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self._initial_backoff * (2 ** (attempt - 1)), self._max_backoff)

    def _promote_delayed(self) -> None:
        now = time.monotonic()
        while self._delayed and self._delayed[0][0] <= now:
            _, seq, job = heapq.heappop(self._delayed)
            heapq.heappush(self._ready, (job.priority, seq, job))

    def _next_wait(self) -> float | None:
        if not self._delayed:
            return None
        return max(self._delayed[0][0] - time.monotonic(), 0.0)

    def _take(self, *, block: bool) -> QueuedJob | None:
        with self._cond:
            while not self._stopped:
                self._promote_delayed()
                if self._ready:
                    _, _, job = heapq.heappop(self._ready)
                    self._active += 1
                    return job
                if not block and not self._delayed:
                    return None
                self._cond.wait(self._next_wait())
            return None

    def run_job(self, job: QueuedJob, handler: Handler) -> None:
        """Run one job through ``handler`` and apply the retry policy."""
        job.attempts += 1
        try:
            handler(job)
        except JobDeferred as deferred:
            job.attempts -= 1
            logger.debug("[%s] job %s deferred: %s", self.name, job.id, deferred)
            self._schedule(job, deferred.delay)
        except Exception as e:
            job.last_error = str(e)
            if getattr(e, "retryable", False) and not job.is_final_attempt:
                delay = self.backoff(job.attempts)
                logger.warning(
                    "[%s] job %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    self.name, job.id, job.attempts, job.max_attempts, delay, e,
                )
                self._schedule(job, delay)
            else:
                logger.error(
                    "[%s] job %s failed permanently after %d attempt(s): %s",
                    self.name, job.id, job.attempts, e,
                )
                with self._cond:
                    self.dead_letters.append(job)
        finally:
            with self._cond:
                self._active -= 1
                self._cond.notify_all()

    def process(self, handler: Handler, concurrency: int) -> None:
        """Start ``concurrency`` worker threads consuming jobs until stop()."""
        with self._cond:
            self._stopped = False

        def worker() -> None:
            while True:
                job = self._take(block=True)
                if job is None:
                    return
                self.run_job(job, handler)

        for index in range(concurrency):
            thread = threading.Thread(
                target=worker, name=f"{self.name}-worker-{index}", daemon=True
            )
            thread.start()
            self._workers.append(thread)
        logger.info("[%s] started %d workers", self.name, concurrency)

    def drain(self, handler: Handler) -> int:
        """Run queued jobs on the calling thread until none remain, including
        delayed retries. Returns the number of handler invocations."""
        processed = 0
        while True:
            job = self._take(block=False)
            if job is None:
                return processed
            self.run_job(job, handler)
            processed += 1

    def stop(self, timeout: float | None = None) -> None:
        with self._cond:
            self._stopped = True
            self._cond.notify_all()
        for thread in self._workers:
            thread.join(timeout)
        self._workers.clear()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no job is queued, delayed, or running."""
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._ready and not self._delayed and self._active == 0,
                timeout,
            )

    def __len__(self) -> int:
        with self._cond:
            return len(self._ready) + len(self._delayed)
