"""Error taxonomy for the generation orchestrator.

Every error the orchestrator surfaces derives from :class:`MediaforgeError`.
The API layer maps each class to an HTTP status; messages on the
client-facing classes are safe to show to end users.

Backend failures are split into :class:`TransientBackendError` (retried by
the dispatcher) and :class:`PermanentBackendError` (failed immediately).
"""

from __future__ import annotations


class MediaforgeError(Exception):
    """Base class for all orchestrator errors."""


class ValidationError(MediaforgeError):
    """Malformed generation request.  Surfaced immediately, never retried."""


class Rejected(MediaforgeError):
    """Moderation veto.  Terminal, surfaced to the user with its reason."""

    def __init__(self, reason: str, job_id: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.job_id = job_id


class RateLimited(MediaforgeError):
    """The user's admission cap is exhausted for the current window."""

    def __init__(self, retry_after: float) -> None:
        super().__init__(f"Rate limit exceeded, retry in {retry_after:.0f}s")
        self.retry_after = retry_after


class JobNotFound(MediaforgeError):
    """No job with the requested identifier exists (or it was purged)."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class QueueUnavailable(MediaforgeError):
    """The job queue can no longer accept work."""


class ServiceUnavailable(MediaforgeError):
    """The orchestrator failed closed and rejects new submissions."""


class BackendError(MediaforgeError):
    """A model backend failed to produce output."""


class TransientBackendError(BackendError):
    """Timeouts, connection failures and 5xx responses.  Eligible for retry."""


class PermanentBackendError(BackendError):
    """Prompt refused by the model, quota exhausted, bad request.  Not retried."""


class Timeout(MediaforgeError):
    """A job exceeded its mode's wall-clock budget."""


class AssetNotFound(MediaforgeError):
    """No stored asset with the requested identifier exists."""


class InvalidSignature(MediaforgeError):
    """A signed asset URL is malformed, tampered with, or expired."""
