"""Per-mode FIFO job queue with per-user admission control.

The queue keeps one ordered sub-queue per :class:`~mediaforge.core.jobs.Mode`
so that expensive modes (video) apply backpressure independently of cheap
ones (image).  Ordering is FIFO within a mode; nothing is promised across
modes.

Admission
---------
:class:`RateLimiter` implements a sliding window per user: at most
``max_jobs`` admissions within ``window_seconds``.  The (N+1)th attempt raises
:class:`~mediaforge.core.errors.RateLimited` carrying the number of seconds
until the oldest admission leaves the window.  Users with nothing left in the
window are forgotten by :meth:`RateLimiter.prune`, which the orchestrator
calls on every retention pass.

Concurrency
-----------
The queue is owned by a single asyncio event loop and is not thread-safe.
Workers block in :meth:`JobQueue.get`, which suspends only the calling task.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable

from .errors import QueueUnavailable, RateLimited
from .jobs import Job, Mode

logger = logging.getLogger(__name__)


class RateLimiter:
    """Sliding-window admission counter keyed by user id."""

    def __init__(
        self,
        max_jobs: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_jobs = max_jobs
        self.window_seconds = window_seconds
        self._clock = clock
        self._admissions: dict[str, deque[float]] = {}

    def _expire(self, history: deque[float], now: float) -> None:
        while history and now - history[0] >= self.window_seconds:
            history.popleft()

    def acquire(self, user_id: str) -> None:
        """Record an admission for *user_id* or raise ``RateLimited``."""
        now = self._clock()
        history = self._admissions.setdefault(user_id, deque())
        self._expire(history, now)

        if len(history) >= self.max_jobs:
            retry_after = max(0.0, history[0] + self.window_seconds - now)
            raise RateLimited(retry_after)

        history.append(now)

    def prune(self) -> int:
        """Forget users with no admission left in the window.  Returns how many."""
        now = self._clock()
        idle = []
        for user_id, history in self._admissions.items():
            self._expire(history, now)
            if not history:
                idle.append(user_id)
        for user_id in idle:
            del self._admissions[user_id]
        return len(idle)

    def __len__(self) -> int:
        return len(self._admissions)

    def reset(self) -> None:
        self._admissions.clear()


class JobQueue:
    """FIFO sub-queues per mode.

    Args:
        limiter: Admission policy applied by :meth:`enqueue`.
    """

    def __init__(self, limiter: RateLimiter) -> None:
        self.limiter = limiter
        self._queues: dict[Mode, deque[Job]] = {mode: deque() for mode in Mode}
        self._ready: dict[Mode, asyncio.Event] = {mode: asyncio.Event() for mode in Mode}
        self._index: dict[str, Mode] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def enqueue(self, job: Job, *, admit: bool = True) -> str:
        """Append *job* to its mode's sub-queue and return its id.

        Args:
            job: Job to queue.
            admit: Charge the user's admission cap.  Disabled when restoring
                previously admitted jobs.

        Raises:
            QueueUnavailable: The queue has been closed.
            RateLimited: The user's admission cap is exhausted.
        """
        if self._closed:
            raise QueueUnavailable("Job queue is closed")
        if admit:
            self.limiter.acquire(job.user_id)

        self._queues[job.mode].append(job)
        self._index[job.id] = job.mode
        self._ready[job.mode].set()
        logger.debug(
            "Enqueued job %s (mode=%s, depth=%d)", job.id, job.mode.value, self.depth(job.mode)
        )
        return job.id

    def dequeue(self, mode: Mode) -> Job | None:
        """Pop the oldest job of *mode*, or ``None`` when the sub-queue is empty."""
        queue = self._queues[mode]
        if not queue:
            return None
        job = queue.popleft()
        del self._index[job.id]
        return job

    async def get(self, mode: Mode) -> Job:
        """Wait until a job of *mode* is available and pop it.

        Raises:
            QueueUnavailable: The queue was closed while waiting.
        """
        while True:
            if self._closed:
                raise QueueUnavailable("Job queue is closed")
            job = self.dequeue(mode)
            if job is not None:
                return job
            self._ready[mode].clear()
            await self._ready[mode].wait()

    def remove(self, job_id: str) -> bool:
        """Withdraw a queued job.  Returns ``False`` if it is not queued."""
        mode = self._index.pop(job_id, None)
        if mode is None:
            return False
        queue = self._queues[mode]
        for job in queue:
            if job.id == job_id:
                queue.remove(job)
                break
        return True

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._index

    def depth(self, mode: Mode) -> int:
        return len(self._queues[mode])

    def snapshot(self) -> dict[str, list[str]]:
        """Queued job ids per mode, in dispatch order."""
        return {mode.value: [job.id for job in queue] for mode, queue in self._queues.items()}

    def close(self) -> None:
        """Stop accepting work and wake every waiting worker."""
        self._closed = True
        for event in self._ready.values():
            event.set()
