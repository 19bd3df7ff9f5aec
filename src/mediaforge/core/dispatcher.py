"""Worker dispatcher: per-mode worker pools that run jobs against backends.

Each mode gets its own pool of asyncio worker tasks (``workers_per_mode``).
A worker pulls the oldest job of its mode from the
:class:`~mediaforge.core.job_queue.JobQueue`, runs it, and goes back for the
next one, so dispatch is FIFO per mode while completion order is free.

Workers never touch job records.  Everything they learn is posted to the
orchestrator as a :class:`StatusMessage`:

=========  =====================================================
Kind       Meaning
=========  =====================================================
running    the worker picked the job up
progress   throttled progress text from the backend
succeeded  output stored; carries the :class:`StoredAsset`
failed     final failure; carries a :class:`FailureReason`
=========  =====================================================

Run Semantics
-------------
- The backend is resolved from a static ``Mode -> ModelBackend`` table.
- Transient errors are retried per :class:`~mediaforge.core.retry.RetryPolicy`
  with exponential backoff; other errors fail the job at once.
- The mode's wall-clock timeout covers every attempt and backoff together.
  When it elapses the job fails with ``Timeout`` and no attempt follows.
- :meth:`WorkerDispatcher.abort` cancels a running job's task, which cancels
  the in-flight backend call (the cooperative abort path).
- Storing the output is never interrupted.  If the job is stopped while its
  asset is being written, the asset is posted as a late ``succeeded`` message
  once written, and the orchestrator deletes it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from .asset_store import AssetStoreGateway
from .backends import BackendOutput, ModelBackend
from .errors import BackendError, QueueUnavailable, Timeout
from .job_queue import JobQueue
from .jobs import FailureReason, Job, Mode, StoredAsset
from .retry import ProgressThrottle, RetryPolicy

logger = logging.getLogger(__name__)


class MessageKind(str, Enum):
    RUNNING = "running"
    PROGRESS = "progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class StatusMessage:
    """A worker's report about one job, applied by the orchestrator."""

    job_id: str
    kind: MessageKind
    text: str | None = None
    asset: StoredAsset | None = None
    reason: FailureReason | None = None
    detail: str | None = None


@dataclass(frozen=True)
class DispatchResult:
    """Final outcome of :meth:`WorkerDispatcher.run`."""

    job_id: str
    attempts: int
    asset: StoredAsset | None = None
    reason: FailureReason | None = None
    detail: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.asset is not None


@dataclass
class _Attempts:
    count: int = 0


class WorkerDispatcher:
    """Run queued jobs on per-mode worker pools.

    Args:
        queue: Source of jobs.
        backends: Static lookup table from mode to backend.
        gateway: Where successful output is stored.
        post: Callback delivering status messages to the orchestrator.
        retry: Backoff policy for transient backend errors.
        timeouts: Wall-clock budget in seconds per mode.
        workers: Pool size per mode.
        progress_interval: Minimum seconds between relayed progress updates.
        sleep: Awaitable sleep used for backoff (patched in tests).
        clock: Monotonic clock used by the progress throttle.
    """

    def __init__(
        self,
        queue: JobQueue,
        backends: dict[Mode, ModelBackend],
        gateway: AssetStoreGateway,
        post: Callable[[StatusMessage], None],
        retry: RetryPolicy,
        timeouts: dict[Mode, float],
        workers: dict[Mode, int],
        progress_interval: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._queue = queue
        self._backends = backends
        self._gateway = gateway
        self._post = post
        self.retry = retry
        self.timeouts = timeouts
        self.workers = workers
        self.progress_interval = progress_interval
        self._sleep = sleep
        self._clock = clock

        self._tasks: list[asyncio.Task] = []
        self._active: dict[str, asyncio.Task] = {}
        self._aborted: set[str] = set()
        self._late_stores: set[asyncio.Future] = set()

    # -- Pool lifecycle ---------------------------------------------------

    def start(self) -> None:
        """Spawn the worker tasks for every mode."""
        for mode in Mode:
            for index in range(self.workers[mode]):
                name = f"{mode.value}-worker-{index}"
                self._tasks.append(asyncio.create_task(self._worker(mode), name=name))
        logger.info(
            "Worker pools started: %s",
            ", ".join(f"{mode.value}={self.workers[mode]}" for mode in Mode),
        )

    async def stop(self) -> None:
        """Cancel every worker and wait for them, and for any asset write still in flight."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await asyncio.gather(*self._late_stores, return_exceptions=True)
        logger.info("Worker pools stopped")

    async def _worker(self, mode: Mode) -> None:
        while True:
            try:
                job = await self._queue.get(mode)
            except QueueUnavailable:
                logger.info("Queue closed; %s worker exiting", mode.value)
                return

            task = asyncio.create_task(self.run(job))
            self._active[job.id] = task
            try:
                await task
            except asyncio.CancelledError:
                if job.id not in self._aborted:
                    raise
            finally:
                self._active.pop(job.id, None)
                self._aborted.discard(job.id)

    # -- Single job -------------------------------------------------------

    def abort(self, job_id: str) -> bool:
        """Cancel the in-flight run of *job_id*.  Returns ``False`` if not running."""
        task = self._active.get(job_id)
        if task is None or task.done():
            return False
        self._aborted.add(job_id)
        task.cancel()
        return True

    def is_running(self, job_id: str) -> bool:
        return job_id in self._active

    async def run(self, job: Job) -> DispatchResult:
        """Run *job* to completion and post its outcome.

        Returns:
            The final :class:`DispatchResult`.  Cancellation is re-raised
            after the ``failed`` message is posted.
        """
        backend = self._backends[job.mode]
        timeout = self.timeouts[job.mode]
        attempts = _Attempts()
        throttle = ProgressThrottle(self.progress_interval, clock=self._clock)

        def report(text: str) -> None:
            if throttle.allow():
                self._post(StatusMessage(job.id, MessageKind.PROGRESS, text=text))

        self._post(StatusMessage(job.id, MessageKind.RUNNING))
        logger.info("Running job %s on %s backend (%s)", job.id, backend.name, job.mode.value)

        store: asyncio.Future | None = None
        try:
            output = await asyncio.wait_for(
                self._invoke_with_retry(backend, job, report, attempts), timeout=timeout
            )
            # A write in progress runs to completion even if the job is cancelled.
            store = asyncio.ensure_future(
                asyncio.to_thread(self._gateway.store, output.data, output.mime)
            )
            asset = await asyncio.shield(store)
        except asyncio.CancelledError:
            reason = (
                FailureReason.CANCELLED if job.id in self._aborted else FailureReason.INTERRUPTED
            )
            logger.info("Job %s stopped: %s", job.id, reason.value)
            self._post(StatusMessage(job.id, MessageKind.FAILED, reason=reason))
            if store is not None:
                self._hand_over_late_asset(job.id, store)
            raise
        except asyncio.TimeoutError:
            error = Timeout(f"Exceeded {timeout:g}s budget after {attempts.count} attempt(s)")
            result = DispatchResult(
                job.id, attempts.count, reason=FailureReason.TIMEOUT, detail=str(error)
            )
            logger.error("Job %s timed out: %s", job.id, result.detail)
        except BackendError as e:
            result = DispatchResult(
                job.id, attempts.count, reason=FailureReason.BACKEND_ERROR, detail=str(e)
            )
            logger.error("Job %s failed after %d attempt(s): %s", job.id, attempts.count, e)
        except Exception as e:
            result = DispatchResult(
                job.id, attempts.count, reason=FailureReason.BACKEND_ERROR, detail=repr(e)
            )
            logger.exception("Job %s failed with an unexpected error", job.id)
        else:
            result = DispatchResult(job.id, attempts.count, asset=asset)
            logger.info("Job %s succeeded (%s, %d bytes)", job.id, asset.mime, asset.size)

        if result.succeeded:
            self._post(StatusMessage(job.id, MessageKind.SUCCEEDED, asset=result.asset))
        else:
            self._post(
                StatusMessage(
                    job.id, MessageKind.FAILED, reason=result.reason, detail=result.detail
                )
            )
        return result

    def _hand_over_late_asset(self, job_id: str, store: asyncio.Future) -> None:
        """Post the asset of a stopped job once written, so the orchestrator deletes it."""
        self._late_stores.add(store)

        def on_stored(future: asyncio.Future) -> None:
            self._late_stores.discard(future)
            if future.cancelled():
                return
            error = future.exception()
            if error is not None:
                logger.error("Late asset write for job %s failed: %s", job_id, error)
                return
            self._post(StatusMessage(job_id, MessageKind.SUCCEEDED, asset=future.result()))

        store.add_done_callback(on_stored)

    async def _invoke_with_retry(
        self,
        backend: ModelBackend,
        job: Job,
        report: Callable[[str], None],
        attempts: _Attempts,
    ) -> BackendOutput:
        while True:
            attempts.count += 1
            try:
                return await backend.invoke(job.prompt, job.options, report)
            except Exception as e:
                if not self.retry.should_retry(attempts.count, e):
                    raise
                delay = self.retry.delay_for(attempts.count)
                logger.warning(
                    "Transient failure on job %s (attempt %d/%d): %s; retrying in %.2fs",
                    job.id,
                    attempts.count,
                    self.retry.max_attempts,
                    e,
                    delay,
                )
                await self._sleep(delay)
