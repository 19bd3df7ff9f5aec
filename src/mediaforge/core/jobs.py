"""Job records and the per-job state machine.

A :class:`Job` moves through ``Queued -> Running -> {Succeeded, Failed}``, or
directly ``Queued -> Rejected`` / ``Queued -> Failed`` (cancellation before
dispatch).  Terminal states are final: every ``mark_*`` method refuses to
leave them, which keeps status transitions monotonic.

``result_ref`` is only ever written by :meth:`Job.mark_succeeded`, so it is
set if and only if the job succeeded.

Jobs are plain dataclasses.  Only the orchestrator mutates them; everything
else receives a :meth:`Job.snapshot` copy.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class Mode(str, Enum):
    """Generation mode.  Determines the backend and worker pool a job uses."""

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    WEB = "web"

    @property
    def requires_duration(self) -> bool:
        return self in (Mode.VIDEO, Mode.AUDIO)


class JobStatus(str, Enum):
    QUEUED = "Queued"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    REJECTED = "Rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.REJECTED)


class FailureReason(str, Enum):
    TIMEOUT = "Timeout"
    BACKEND_ERROR = "BackendError"
    CANCELLED = "Cancelled"
    INTERRUPTED = "Interrupted"


# Legal edges of the state machine.  Anything else is an InvalidTransition.
_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.FAILED, JobStatus.REJECTED}),
    JobStatus.RUNNING: frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED}),
    JobStatus.SUCCEEDED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.REJECTED: frozenset(),
}


class InvalidTransition(ValueError):
    """Raised when a job is asked to move along an edge the state machine forbids."""


@dataclass(frozen=True)
class JobOptions:
    """Rendering options attached to a job.

    Attributes:
        style: Free-form style hint passed through to the backend.
        resolution: ``"<width>x<height>"`` string, e.g. ``"512x512"``.
        duration: Length in seconds.  Only meaningful for video and audio.
    """

    style: str = ""
    resolution: str = "512x512"
    duration: float | None = None

    @property
    def size(self) -> tuple[int, int]:
        """Parse ``resolution`` into ``(width, height)``."""
        width, _, height = self.resolution.lower().partition("x")
        return int(width), int(height)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"style": self.style, "resolution": self.resolution}
        if self.duration is not None:
            data["duration"] = self.duration
        return data


def new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Job:
    """A single generation request and its lifecycle state.

    Attributes:
        id: Opaque unique identifier.
        mode: Generation mode.
        prompt: User prompt text.
        options: Rendering options.
        user_id: Admission key used for rate limiting.
        status: Current lifecycle status.
        created_at: Epoch seconds at admission.
        updated_at: Epoch seconds of the last mutation.
        finished_at: Epoch seconds at which a terminal state was reached.
        result_ref: Asset identifier of the stored result (Succeeded only).
        mime: Mime type of the stored result (Succeeded only).
        progress: Latest progress text relayed by the worker.
        reason: Failure reason value or moderation reason.
        detail: Internal cause of a failure.  Logged, never shown to clients.
    """

    mode: Mode
    prompt: str
    options: JobOptions = field(default_factory=JobOptions)
    user_id: str = "anonymous"
    id: str = field(default_factory=new_job_id)
    status: JobStatus = JobStatus.QUEUED
    created_at: float = field(default_factory=time.time)
    updated_at: float | None = None
    finished_at: float | None = None
    result_ref: str | None = None
    mime: str | None = None
    progress: str | None = None
    reason: str | None = None
    detail: str | None = None

    # -- Transitions ------------------------------------------------------

    def _move(self, target: JobStatus, now: float | None) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise InvalidTransition(f"Job {self.id}: {self.status.value} -> {target.value}")
        self.status = target
        self.updated_at = time.time() if now is None else now
        if target.is_terminal:
            self.finished_at = self.updated_at

    def mark_running(self, now: float | None = None) -> None:
        self._move(JobStatus.RUNNING, now)

    def mark_succeeded(self, asset_id: str, mime: str, now: float | None = None) -> None:
        self._move(JobStatus.SUCCEEDED, now)
        self.result_ref = asset_id
        self.mime = mime

    def mark_failed(
        self, reason: FailureReason, detail: str | None = None, now: float | None = None
    ) -> None:
        self._move(JobStatus.FAILED, now)
        self.reason = reason.value
        self.detail = detail

    def mark_rejected(self, reason: str, now: float | None = None) -> None:
        self._move(JobStatus.REJECTED, now)
        self.reason = reason

    def set_progress(self, text: str, now: float | None = None) -> None:
        if self.status is not JobStatus.RUNNING:
            raise InvalidTransition(f"Job {self.id}: progress while {self.status.value}")
        self.progress = text
        self.updated_at = time.time() if now is None else now

    # -- Views ------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def snapshot(self) -> Job:
        """Return a detached copy safe to hand outside the orchestrator."""
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "mode": self.mode.value,
            "prompt": self.prompt,
            "options": self.options.to_dict(),
            "user_id": self.user_id,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "finished_at": self.finished_at,
            "result_ref": self.result_ref,
            "mime": self.mime,
            "progress": self.progress,
            "reason": self.reason,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        options = data.get("options") or {}
        return cls(
            id=data["id"],
            mode=Mode(data["mode"]),
            prompt=data["prompt"],
            options=JobOptions(
                style=options.get("style", ""),
                resolution=options.get("resolution", "512x512"),
                duration=options.get("duration"),
            ),
            user_id=data.get("user_id", "anonymous"),
            status=JobStatus(data["status"]),
            created_at=data["created_at"],
            updated_at=data.get("updated_at"),
            finished_at=data.get("finished_at"),
            result_ref=data.get("result_ref"),
            mime=data.get("mime"),
            progress=data.get("progress"),
            reason=data.get("reason"),
            detail=data.get("detail"),
        )


@dataclass(frozen=True)
class StoredAsset:
    """A generated asset held by the asset store gateway."""

    id: str
    mime: str
    size: int
    url: str
    expires_at: float


@dataclass(frozen=True)
class ModerationVerdict:
    """Outcome of a moderation check.  ``reason`` is present iff rejected."""

    accepted: bool
    reason: str | None = None

    @classmethod
    def accept(cls) -> ModerationVerdict:
        return cls(accepted=True)

    @classmethod
    def reject(cls, reason: str) -> ModerationVerdict:
        return cls(accepted=False, reason=reason)
