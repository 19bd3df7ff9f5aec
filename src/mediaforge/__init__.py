"""MediaForge - moderated, queued generation jobs for image, video, audio and web modes."""

__version__ = "0.1.0"

from mediaforge.core.config import MediaforgeConfig, config
from mediaforge.core.jobs import Job, JobStatus, Mode

__all__ = [
    "Job",
    "JobStatus",
    "MediaforgeConfig",
    "Mode",
    "config",
]
