"""Model backends, one per generation mode.

Importing this package registers every built-in backend kind with
:data:`backend_registry`.
"""

from .base import (
    BackendOutput,
    BackendRegistry,
    ModelBackend,
    ProgressReporter,
    backend_registry,
    build_backend_table,
)
from .diffusers_image import DiffusersImageBackend
from .http_backend import HttpBackend
from .placeholder import PlaceholderBackend

__all__ = [
    "BackendOutput",
    "BackendRegistry",
    "DiffusersImageBackend",
    "HttpBackend",
    "ModelBackend",
    "PlaceholderBackend",
    "ProgressReporter",
    "backend_registry",
    "build_backend_table",
]
