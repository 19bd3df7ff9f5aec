"""Generation orchestrator: the façade over moderation, queue, workers and storage.

The orchestrator owns the job table.  It is the only code that mutates a
:class:`~mediaforge.core.jobs.Job`:

- :meth:`GenerationOrchestrator.submit` creates jobs and resolves moderation
  rejections,
- :meth:`GenerationOrchestrator.cancel` resolves cancellations,
- a single consumer task applies the
  :class:`~mediaforge.core.dispatcher.StatusMessage` stream posted by workers.

Because all three run on one event loop and workers only send messages,
there is exactly one writer per job and no lock is needed.  A message that
arrives for a job already in a terminal state (a cancelled job whose backend
call finished anyway) is discarded; if it carried a stored asset, that asset
is deleted.

Lifecycle
---------
``start()``
    Restores ``jobs.json`` (when ``persist_jobs`` is enabled), starts the
    worker pools, the message consumer and the retention janitor.
``stop()``
    Stops intake, stops the workers (running jobs end ``Interrupted``),
    applies the remaining messages and flushes the table to ``jobs.json``.

Failing Closed
--------------
If the queue reports itself unavailable during ``submit`` the orchestrator
stops accepting submissions for the rest of its life.  Jobs are never
silently dropped.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field

from .asset_store import AssetStoreGateway, LocalObjectStore
from .backends import ModelBackend, build_backend_table
from .config import MediaforgeConfig
from .dispatcher import MessageKind, StatusMessage, WorkerDispatcher
from .errors import (
    JobNotFound,
    QueueUnavailable,
    Rejected,
    ServiceUnavailable,
    ValidationError,
)
from .job_queue import JobQueue, RateLimiter
from .job_store import load_job_table, save_job_table
from .jobs import FailureReason, InvalidTransition, Job, JobOptions, JobStatus, Mode
from .moderation import ModerationFilter
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

RESOLUTION_PATTERN = re.compile(r"^(\d{2,5})x(\d{2,5})$")
MIN_SIDE = 16
MAX_SIDE = 4096
MAX_DURATION = 600.0


@dataclass
class GenerationRequest:
    """A client's request to generate something."""

    mode: Mode
    prompt: str
    options: JobOptions = field(default_factory=JobOptions)
    user_id: str = "anonymous"


def validate_request(request: GenerationRequest, max_prompt_length: int) -> None:
    """Check the semantic rules every request must satisfy.

    Raises:
        ValidationError: With a message suitable for the client.
    """
    prompt = request.prompt.strip()
    if not prompt:
        raise ValidationError("prompt must not be empty")
    if len(prompt) > max_prompt_length:
        raise ValidationError(f"prompt must be at most {max_prompt_length} characters")

    match = RESOLUTION_PATTERN.match(request.options.resolution.lower())
    if not match:
        raise ValidationError("resolution must look like '<width>x<height>', e.g. '512x512'")
    for side in match.groups():
        if not MIN_SIDE <= int(side) <= MAX_SIDE:
            raise ValidationError(f"resolution sides must be between {MIN_SIDE} and {MAX_SIDE}")

    duration = request.options.duration
    if request.mode.requires_duration and duration is None:
        raise ValidationError(f"duration is required for {request.mode.value} mode")
    if duration is not None and not 0 < duration <= MAX_DURATION:
        raise ValidationError(f"duration must be greater than 0 and at most {MAX_DURATION:g}s")


class GenerationOrchestrator:
    """Own the job table and drive jobs through their lifecycle.

    Args:
        config: Application configuration.
        moderation: Prompt filter run synchronously in :meth:`submit`.
        queue: Per-mode job queue.
        gateway: Asset store gateway.
        backends: Static ``Mode -> ModelBackend`` lookup table.
        clock: Wall-clock source (epoch seconds) for job timestamps.
        sleep: Awaitable sleep used by workers for retry backoff.
    """

    def __init__(
        self,
        config: MediaforgeConfig,
        moderation: ModerationFilter,
        queue: JobQueue,
        gateway: AssetStoreGateway,
        backends: dict[Mode, ModelBackend],
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.moderation = moderation
        self.queue = queue
        self.gateway = gateway
        self.backends = backends
        self._clock = clock

        self._jobs: dict[str, Job] = {}
        self._inbox: asyncio.Queue[StatusMessage] = asyncio.Queue()
        self._subscribers: dict[str, set[asyncio.Queue[Job]]] = {}
        self._tasks: list[asyncio.Task] = []
        self._accepting = True
        self._started = False

        self.dispatcher = WorkerDispatcher(
            queue=queue,
            backends=backends,
            gateway=gateway,
            post=self._inbox.put_nowait,
            retry=RetryPolicy.from_config(config),
            timeouts={mode: config.timeout_for(mode) for mode in Mode},
            workers={mode: config.workers_for(mode) for mode in Mode},
            progress_interval=config.progress_interval_seconds,
            sleep=sleep,
        )

    @classmethod
    def from_config(
        cls,
        config: MediaforgeConfig,
        backends: dict[Mode, ModelBackend] | None = None,
        **kwargs,
    ) -> GenerationOrchestrator:
        """Wire up the default collaborators described by *config*."""
        limiter = RateLimiter(config.rate_limit_max_jobs, config.rate_limit_window_seconds)
        gateway = AssetStoreGateway(
            LocalObjectStore(config.assets_dir),
            secret=config.signing_secret,
            default_ttl=config.url_ttl_seconds,
        )
        return cls(
            config=config,
            moderation=ModerationFilter(config.moderation_extra_terms),
            queue=JobQueue(limiter),
            gateway=gateway,
            backends=backends if backends is not None else build_backend_table(config),
            **kwargs,
        )

    # -- Lifecycle --------------------------------------------------------

    @property
    def accepting(self) -> bool:
        return self._accepting

    async def start(self) -> None:
        """Restore persisted jobs and start workers, consumer and janitor."""
        if self._started:
            return
        if self.config.persist_jobs:
            self._restore()
        self.dispatcher.start()
        self._tasks = [
            asyncio.create_task(self._consume(), name="orchestrator-consumer"),
            asyncio.create_task(self._purge_loop(), name="orchestrator-janitor"),
        ]
        self._started = True
        logger.info("Orchestrator started with %d restored job(s)", len(self._jobs))

    async def stop(self) -> None:
        """Stop intake and workers, then flush the job table."""
        self._accepting = False
        self.queue.close()
        await self.dispatcher.stop()
        self._drain_inbox()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.config.persist_jobs and self._started:
            save_job_table(self.config.jobs_file, list(self._jobs.values()))
            logger.info("Flushed %d job(s) to %s", len(self._jobs), self.config.jobs_file)

        for backend in self.backends.values():
            await backend.close()
        self._started = False
        logger.info("Orchestrator stopped")

    def _restore(self) -> None:
        now = self._clock()
        for job in load_job_table(self.config.jobs_file):
            if job.status is JobStatus.RUNNING:
                job.mark_failed(
                    FailureReason.INTERRUPTED, detail="Server stopped while running", now=now
                )
            elif job.status is JobStatus.QUEUED:
                self.queue.enqueue(job, admit=False)
            self._jobs[job.id] = job

    # -- Public contract --------------------------------------------------

    def submit(self, request: GenerationRequest) -> str:
        """Admit a generation request and return its job id.

        Moderation runs synchronously before the job is queued.

        Raises:
            ServiceUnavailable: The orchestrator has failed closed.
            ValidationError: The request is malformed.
            Rejected: Moderation vetoed the prompt.  The job is recorded as
                ``Rejected`` but never queued.
            RateLimited: The user's admission cap is exhausted.
        """
        if not self._accepting:
            raise ServiceUnavailable("Not accepting new jobs")

        validate_request(request, self.config.max_prompt_length)
        prompt = request.prompt.strip()
        job = Job(
            mode=request.mode,
            prompt=prompt,
            options=request.options,
            user_id=request.user_id,
            created_at=self._clock(),
        )

        verdict = self.moderation.check(prompt, request.mode)
        if not verdict.accepted:
            job.mark_rejected(verdict.reason, now=self._clock())
            self._jobs[job.id] = job
            raise Rejected(verdict.reason, job_id=job.id)

        try:
            self.queue.enqueue(job)
        except QueueUnavailable as e:
            self._accepting = False
            logger.critical("Job queue unavailable; rejecting all new submissions: %s", e)
            raise ServiceUnavailable("Job queue unavailable") from e

        self._jobs[job.id] = job
        logger.info("Accepted job %s (mode=%s, user=%s)", job.id, job.mode.value, job.user_id)
        return job.id

    def get_status(self, job_id: str) -> Job:
        """Return a snapshot of *job_id*.

        Raises:
            JobNotFound: Unknown or purged job.
        """
        return self._require(job_id).snapshot()

    def cancel(self, job_id: str) -> Job:
        """Cancel a Queued or Running job; a no-op for terminal jobs.

        Raises:
            JobNotFound: Unknown or purged job.
        """
        job = self._require(job_id)
        if job.is_terminal:
            return job.snapshot()

        if not self.queue.remove(job_id):
            self.dispatcher.abort(job_id)
        job.mark_failed(FailureReason.CANCELLED, now=self._clock())
        self._publish(job)
        logger.info("Cancelled job %s", job_id)
        return job.snapshot()

    def signed_url(self, job: Job) -> str | None:
        """Fresh signed URL for a succeeded job's asset, ``None`` otherwise."""
        if job.status is not JobStatus.SUCCEEDED or job.result_ref is None:
            return None
        return self.gateway.sign_url(job.result_ref)

    async def subscribe(self, job_id: str) -> AsyncIterator[Job]:
        """Yield snapshots of *job_id* on every change until it is terminal.

        The current snapshot is yielded first.

        Raises:
            JobNotFound: Unknown or purged job.
        """
        job = self._require(job_id)
        updates: asyncio.Queue[Job] = asyncio.Queue()
        self._subscribers.setdefault(job_id, set()).add(updates)
        try:
            snapshot = job.snapshot()
            yield snapshot
            while not snapshot.is_terminal:
                snapshot = await updates.get()
                yield snapshot
        finally:
            subscribers = self._subscribers.get(job_id)
            if subscribers is not None:
                subscribers.discard(updates)
                if not subscribers:
                    del self._subscribers[job_id]

    async def wait(self, job_id: str) -> Job:
        """Wait until *job_id* reaches a terminal state and return it."""
        snapshot = self.get_status(job_id)
        async for snapshot in self.subscribe(job_id):
            pass
        return snapshot

    def jobs(self) -> list[Job]:
        return [job.snapshot() for job in self._jobs.values()]

    def health(self) -> dict:
        return {
            "accepting": self._accepting,
            "jobs": len(self._jobs),
            "running": sum(1 for job in self._jobs.values() if job.status is JobStatus.RUNNING),
            "queues": {mode.value: self.queue.depth(mode) for mode in Mode},
        }

    def purge_expired(self, now: float | None = None) -> list[str]:
        """Drop terminal jobs older than the retention window and delete their assets.

        The asset goes first.  A job whose asset cannot be deleted stays in the
        table and is tried again on the next pass.
        """
        cutoff = (self._clock() if now is None else now) - self.config.job_retention_seconds
        purged = []
        for job in list(self._jobs.values()):
            if not job.is_terminal or job.finished_at is None or job.finished_at > cutoff:
                continue
            if job.result_ref:
                try:
                    self.gateway.delete(job.result_ref)
                except OSError:
                    logger.exception(
                        "Could not delete asset %s of job %s; keeping the job for now",
                        job.result_ref,
                        job.id,
                    )
                    continue
            del self._jobs[job.id]
            purged.append(job.id)
        if purged:
            logger.info("Purged %d expired job(s)", len(purged))
        return purged

    # -- Single writer ----------------------------------------------------

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def _publish(self, job: Job) -> None:
        for updates in self._subscribers.get(job.id, ()):
            updates.put_nowait(job.snapshot())

    def _apply(self, message: StatusMessage) -> None:
        job = self._jobs.get(message.job_id)
        if job is None or job.is_terminal:
            if message.kind is MessageKind.SUCCEEDED and message.asset is not None:
                # Result of a cancelled or purged job.
                self.gateway.delete(message.asset.id)
            logger.debug("Discarding %s message for job %s", message.kind.value, message.job_id)
            return

        now = self._clock()
        try:
            if message.kind is MessageKind.RUNNING:
                job.mark_running(now)
            elif message.kind is MessageKind.PROGRESS:
                job.set_progress(message.text or "", now)
            elif message.kind is MessageKind.SUCCEEDED:
                job.mark_succeeded(message.asset.id, message.asset.mime, now)
            elif message.kind is MessageKind.FAILED:
                job.mark_failed(message.reason, detail=message.detail, now=now)
        except InvalidTransition:
            logger.warning(
                "Ignoring out-of-order %s message for job %s", message.kind.value, job.id
            )
            return
        self._publish(job)

    def _drain_inbox(self) -> None:
        while not self._inbox.empty():
            self._apply(self._inbox.get_nowait())

    async def _consume(self) -> None:
        while True:
            message = await self._inbox.get()
            try:
                self._apply(message)
            except Exception:
                logger.exception(
                    "Failed to apply %s message for job %s", message.kind.value, message.job_id
                )

    async def _purge_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.purge_interval_seconds)
            try:
                self.purge_expired()
                self.queue.limiter.prune()
            except Exception:
                logger.exception("Retention pass failed")
