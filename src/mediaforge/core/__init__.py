"""Core orchestration: job model, moderation, queue, dispatch, storage and configuration."""

from .config import MediaforgeConfig, config
from .errors import (
    BackendError,
    JobNotFound,
    MediaforgeError,
    PermanentBackendError,
    QueueUnavailable,
    RateLimited,
    Rejected,
    ServiceUnavailable,
    Timeout,
    TransientBackendError,
    ValidationError,
)
from .jobs import FailureReason, Job, JobOptions, JobStatus, Mode, ModerationVerdict, StoredAsset
from .orchestrator import GenerationOrchestrator, GenerationRequest

__all__ = [
    "BackendError",
    "FailureReason",
    "GenerationOrchestrator",
    "GenerationRequest",
    "Job",
    "JobNotFound",
    "JobOptions",
    "JobStatus",
    "MediaforgeConfig",
    "MediaforgeError",
    "Mode",
    "ModerationVerdict",
    "PermanentBackendError",
    "QueueUnavailable",
    "RateLimited",
    "Rejected",
    "ServiceUnavailable",
    "StoredAsset",
    "Timeout",
    "TransientBackendError",
    "ValidationError",
    "config",
]
