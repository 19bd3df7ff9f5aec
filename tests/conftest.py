"""Shared pytest fixtures for MediaForge tests."""

from __future__ import annotations

import asyncio
import shutil
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from mediaforge.api.main import create_app
from mediaforge.core.backends import BackendOutput, ModelBackend
from mediaforge.core.config import MediaforgeConfig
from mediaforge.core.jobs import JobOptions, Mode
from mediaforge.core.orchestrator import GenerationOrchestrator

MIME_BY_MODE = {
    Mode.IMAGE: "image/png",
    Mode.VIDEO: "image/gif",
    Mode.AUDIO: "audio/wav",
    Mode.WEB: "text/html",
}


class FakeBackend(ModelBackend):
    """Scriptable backend for tests.

    Each invocation pops the next entry of ``outcomes``: an exception
    instance is raised, bytes are returned as output.  When ``outcomes`` is
    exhausted the backend returns ``default``.
    """

    name = "fake"
    description = "Scripted test backend"

    def __init__(
        self,
        mode: Mode,
        config: MediaforgeConfig | None = None,
        outcomes: list | None = None,
        delay: float = 0.0,
        progress: tuple[str, ...] = (),
        default: bytes = b"fake-bytes",
    ) -> None:
        super().__init__(mode, config)
        self.mime = MIME_BY_MODE[mode]
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.progress = progress
        self.default = default
        self.calls: list[str] = []
        self.cancelled = False
        self.closed = False
        self.started = asyncio.Event()

    async def invoke(self, prompt: str, options: JobOptions, report) -> BackendOutput:
        self.calls.append(prompt)
        self.started.set()
        for text in self.progress:
            report(text)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return BackendOutput(data=outcome, mime=self.mime)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> MediaforgeConfig:
    """Create a fast, isolated configuration.

    One worker per mode, two-second timeouts, zero backoff and no progress
    throttling.  Persistence is off unless a test turns it on.
    """
    return MediaforgeConfig(
        data_dir=temp_dir / "data",
        assets_dir=temp_dir / "assets",
        persist_jobs=False,
        rate_limit_max_jobs=3,
        rate_limit_window_seconds=60,
        workers_per_mode={"image": 1, "video": 1, "audio": 1, "web": 1},
        timeout_seconds={"image": 2.0, "video": 2.0, "audio": 2.0, "web": 2.0},
        retry_max_attempts=3,
        retry_base_delay=0.0,
        progress_interval_seconds=0.0,
        signing_secret="test-secret",
        purge_interval_seconds=3600,
        _env_file=None,
    )


@pytest.fixture
def fake_backends(test_config: MediaforgeConfig) -> dict[Mode, FakeBackend]:
    """One :class:`FakeBackend` per mode, all succeeding by default."""
    return {mode: FakeBackend(mode, test_config) for mode in Mode}


@pytest.fixture
async def orchestrator(test_config, fake_backends):
    """An orchestrator wired to fake backends.  Not started; tests call ``start()``."""
    orch = GenerationOrchestrator.from_config(test_config, backends=fake_backends)
    try:
        yield orch
    finally:
        await orch.stop()


@pytest.fixture
def test_client(test_config, fake_backends) -> Generator[TestClient, None, None]:
    """FastAPI TestClient running the full lifespan against fake backends."""
    app = create_app(test_config, backends=fake_backends)
    with TestClient(app) as client:
        yield client
