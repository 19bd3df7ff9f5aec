"""Tests for mediaforge.core.dispatcher — running jobs against backends.

All backends are scripted fakes (see ``conftest.FakeBackend``).  Backoff
sleeps are recorded instead of awaited so retry tests run instantly.

Tests cover:
- Success path: running -> succeeded messages and a stored asset.
- Retry with exponential backoff for transient errors only.
- Per-mode wall-clock timeout bounding all attempts.
- Progress throttling.
- Worker pools: FIFO dispatch, cooperative abort, shutdown interruption.
- Asset writes that outlive a cancelled job.
"""

from __future__ import annotations

import asyncio
import threading
import time

import pytest

from mediaforge.core.asset_store import AssetStoreGateway, LocalObjectStore
from mediaforge.core.dispatcher import MessageKind, StatusMessage, WorkerDispatcher
from mediaforge.core.errors import PermanentBackendError, TransientBackendError
from mediaforge.core.job_queue import JobQueue, RateLimiter
from mediaforge.core.jobs import FailureReason, Job, Mode
from mediaforge.core.retry import RetryPolicy


async def _until(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def messages() -> list[StatusMessage]:
    return []


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def queue() -> JobQueue:
    return JobQueue(RateLimiter(max_jobs=100, window_seconds=60))


@pytest.fixture
def gateway(temp_dir) -> AssetStoreGateway:
    return AssetStoreGateway(LocalObjectStore(temp_dir / "assets"), secret="secret")


@pytest.fixture
def make_dispatcher(queue, fake_backends, gateway, messages, sleeps):
    def factory(**overrides) -> WorkerDispatcher:
        async def record_sleep(delay: float) -> None:
            sleeps.append(delay)

        settings = {
            "queue": queue,
            "backends": fake_backends,
            "gateway": gateway,
            "post": messages.append,
            "retry": RetryPolicy(max_attempts=3, base_delay=0.5, multiplier=2.0),
            "timeouts": {mode: 1.0 for mode in Mode},
            "workers": {mode: 1 for mode in Mode},
            "progress_interval": 0.0,
            "sleep": record_sleep,
        }
        settings.update(overrides)
        return WorkerDispatcher(**settings)

    return factory


def _kinds(messages: list[StatusMessage]) -> list[MessageKind]:
    return [message.kind for message in messages]


class TestRun:
    """Test WorkerDispatcher.run on a single job."""

    async def test_success_stores_asset(self, make_dispatcher, messages, gateway):
        """A successful run posts running then succeeded and stores the asset."""
        result = await make_dispatcher().run(Job(mode=Mode.IMAGE, prompt="a red circle"))

        assert result.succeeded
        assert result.attempts == 1
        assert result.asset.mime == "image/png"
        assert _kinds(messages) == [MessageKind.RUNNING, MessageKind.SUCCEEDED]
        assert messages[-1].asset == result.asset
        assert gateway.sign_url(result.asset.id)

    async def test_backend_selected_by_mode(self, make_dispatcher, fake_backends):
        """Only the backend registered for the job's mode is invoked."""
        await make_dispatcher().run(Job(mode=Mode.AUDIO, prompt="rain"))
        assert fake_backends[Mode.AUDIO].calls == ["rain"]
        assert fake_backends[Mode.IMAGE].calls == []

    async def test_transient_errors_are_retried(self, make_dispatcher, fake_backends, sleeps):
        """Transient failures are retried with exponentially growing delays."""
        fake_backends[Mode.IMAGE].outcomes = [
            TransientBackendError("HTTP 503"),
            TransientBackendError("connection reset"),
        ]
        result = await make_dispatcher().run(Job(mode=Mode.IMAGE, prompt="retry me"))

        assert result.succeeded
        assert result.attempts == 3
        assert sleeps == [0.5, 1.0]

    async def test_retry_budget_exhausted(self, make_dispatcher, fake_backends, messages, sleeps):
        """After max_attempts transient failures the job fails as a backend error."""
        fake_backends[Mode.IMAGE].outcomes = [TransientBackendError("HTTP 502")] * 5
        result = await make_dispatcher().run(Job(mode=Mode.IMAGE, prompt="never works"))

        assert result.reason is FailureReason.BACKEND_ERROR
        assert result.attempts == 3
        assert len(fake_backends[Mode.IMAGE].calls) == 3
        assert len(sleeps) == 2
        assert messages[-1].kind is MessageKind.FAILED
        assert messages[-1].reason is FailureReason.BACKEND_ERROR

    async def test_permanent_error_fails_immediately(self, make_dispatcher, fake_backends, sleeps):
        """A permanent failure is never retried."""
        fake_backends[Mode.WEB].outcomes = [PermanentBackendError("quota exhausted")]
        result = await make_dispatcher().run(Job(mode=Mode.WEB, prompt="landing page"))

        assert result.reason is FailureReason.BACKEND_ERROR
        assert result.attempts == 1
        assert result.detail == "quota exhausted"
        assert sleeps == []

    async def test_unexpected_error_is_a_backend_error(self, make_dispatcher, fake_backends):
        """Exceptions outside the backend error contract are treated as permanent."""
        fake_backends[Mode.IMAGE].outcomes = [RuntimeError("segfault-ish")]
        result = await make_dispatcher().run(Job(mode=Mode.IMAGE, prompt="oops"))

        assert result.reason is FailureReason.BACKEND_ERROR
        assert "segfault-ish" in result.detail
        assert result.attempts == 1

    async def test_timeout_fails_job(self, make_dispatcher, fake_backends, messages):
        """A backend call exceeding the mode's budget fails the job with Timeout."""
        fake_backends[Mode.VIDEO].delay = 5.0
        dispatcher = make_dispatcher(timeouts={mode: 0.05 for mode in Mode})

        result = await dispatcher.run(Job(mode=Mode.VIDEO, prompt="slow"))

        assert result.reason is FailureReason.TIMEOUT
        assert result.attempts == 1
        assert fake_backends[Mode.VIDEO].cancelled
        assert messages[-1].reason is FailureReason.TIMEOUT

    async def test_timeout_bounds_retries(self, make_dispatcher, fake_backends):
        """The timeout covers retries and backoff, so no attempt starts after it."""

        async def slow_sleep(delay: float) -> None:
            await asyncio.sleep(0.03)

        fake_backends[Mode.IMAGE].outcomes = [TransientBackendError("HTTP 500")] * 50
        dispatcher = make_dispatcher(
            retry=RetryPolicy(max_attempts=50, base_delay=0.03),
            timeouts={mode: 0.1 for mode in Mode},
            sleep=slow_sleep,
        )

        result = await dispatcher.run(Job(mode=Mode.IMAGE, prompt="flaky"))

        assert result.reason is FailureReason.TIMEOUT
        assert result.attempts < 50
        assert len(fake_backends[Mode.IMAGE].calls) == result.attempts

    async def test_progress_is_throttled(self, make_dispatcher, fake_backends, messages):
        """Updates arriving inside the throttle interval are dropped."""
        fake_backends[Mode.IMAGE].progress = ("Step 1/3", "Step 2/3", "Step 3/3")
        dispatcher = make_dispatcher(progress_interval=1.0, clock=lambda: 42.0)

        await dispatcher.run(Job(mode=Mode.IMAGE, prompt="steps"))

        progress = [m.text for m in messages if m.kind is MessageKind.PROGRESS]
        assert progress == ["Step 1/3"]

    async def test_progress_relayed_when_unthrottled(self, make_dispatcher, fake_backends, messages):
        """With a zero interval every update is relayed in order."""
        fake_backends[Mode.IMAGE].progress = ("a", "b")
        await make_dispatcher().run(Job(mode=Mode.IMAGE, prompt="steps"))
        assert [m.text for m in messages if m.kind is MessageKind.PROGRESS] == ["a", "b"]


class TestWorkerPools:
    """Test the per-mode worker pools."""

    async def test_fifo_dispatch_within_mode(self, make_dispatcher, queue, fake_backends, messages):
        """A single worker runs its mode's jobs in submission order."""
        for prompt in ("first", "second", "third"):
            queue.enqueue(Job(mode=Mode.IMAGE, prompt=prompt))
        dispatcher = make_dispatcher()
        dispatcher.start()
        try:
            await _until(lambda: _kinds(messages).count(MessageKind.SUCCEEDED) == 3)
        finally:
            await dispatcher.stop()

        assert fake_backends[Mode.IMAGE].calls == ["first", "second", "third"]

    async def test_abort_cancels_running_job(self, make_dispatcher, queue, fake_backends, messages):
        """Abort cancels the backend call and the worker moves on to the next job."""
        backend = fake_backends[Mode.VIDEO]
        backend.delay = 10.0
        job = Job(mode=Mode.VIDEO, prompt="long video")
        queue.enqueue(job)
        dispatcher = make_dispatcher(timeouts={mode: 30.0 for mode in Mode})
        dispatcher.start()
        try:
            await asyncio.wait_for(backend.started.wait(), 2)
            assert dispatcher.is_running(job.id)
            assert dispatcher.abort(job.id)
            await _until(lambda: MessageKind.FAILED in _kinds(messages))

            backend.delay = 0.0
            queue.enqueue(Job(mode=Mode.VIDEO, prompt="next"))
            await _until(lambda: MessageKind.SUCCEEDED in _kinds(messages))
        finally:
            await dispatcher.stop()

        assert backend.cancelled
        failed = next(m for m in messages if m.kind is MessageKind.FAILED)
        assert failed.reason is FailureReason.CANCELLED

    async def test_abort_unknown_job(self, make_dispatcher):
        """Aborting a job that is not running reports False."""
        assert not make_dispatcher().abort("missing")

    async def test_stop_interrupts_running_jobs(self, make_dispatcher, queue, fake_backends, messages):
        """Stopping the pools fails in-flight jobs as Interrupted."""
        backend = fake_backends[Mode.AUDIO]
        backend.delay = 10.0
        queue.enqueue(Job(mode=Mode.AUDIO, prompt="long song"))
        dispatcher = make_dispatcher(timeouts={mode: 30.0 for mode in Mode})
        dispatcher.start()
        await asyncio.wait_for(backend.started.wait(), 2)

        await dispatcher.stop()

        assert messages[-1].kind is MessageKind.FAILED
        assert messages[-1].reason is FailureReason.INTERRUPTED


class TestLateAssetWrites:
    """Asset writes in progress when a job is stopped."""

    @pytest.fixture
    def storing(self, gateway, monkeypatch) -> threading.Event:
        """Make gateway.store slow and signal when a write has begun."""
        started = threading.Event()
        original = gateway.store

        def slow_store(data: bytes, mime: str):
            started.set()
            time.sleep(0.2)
            return original(data, mime)

        monkeypatch.setattr(gateway, "store", slow_store)
        return started

    async def test_abort_during_store_hands_over_asset(
        self, make_dispatcher, queue, messages, storing
    ):
        """The write finishes and its asset follows the Cancelled failure."""
        job = Job(mode=Mode.IMAGE, prompt="a red circle")
        queue.enqueue(job)
        dispatcher = make_dispatcher()
        dispatcher.start()
        try:
            await _until(storing.is_set)
            assert dispatcher.abort(job.id)
            await _until(lambda: MessageKind.SUCCEEDED in _kinds(messages))
        finally:
            await dispatcher.stop()

        assert _kinds(messages)[-2:] == [MessageKind.FAILED, MessageKind.SUCCEEDED]
        assert messages[-2].reason is FailureReason.CANCELLED
        assert messages[-1].asset is not None

    async def test_stop_waits_for_store(self, make_dispatcher, queue, messages, storing):
        """Stopping the pools waits for the write and posts its asset."""
        queue.enqueue(Job(mode=Mode.IMAGE, prompt="a red circle"))
        dispatcher = make_dispatcher()
        dispatcher.start()
        await _until(storing.is_set)

        await dispatcher.stop()

        assert _kinds(messages)[-2:] == [MessageKind.FAILED, MessageKind.SUCCEEDED]
        assert messages[-2].reason is FailureReason.INTERRUPTED
