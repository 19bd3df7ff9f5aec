"""Base class and registry for model backends.

A model backend is the opaque capability that turns a prompt into bytes.  The
orchestrator never knows how a backend works; it only relies on
:meth:`ModelBackend.invoke`.

Backend Pattern
---------------
Each backend kind is a :class:`ModelBackend` subclass registered under a short
name in :data:`backend_registry`.  At startup the configured kind for every
:class:`~mediaforge.core.jobs.Mode` is instantiated once, producing a static
``Mode -> backend`` lookup table (see :func:`build_backend_table`).  The
dispatcher indexes that table; there is no string branching at dispatch time.

Error Contract
--------------
Backends signal failure by raising:

- :class:`~mediaforge.core.errors.TransientBackendError` for timeouts,
  connection problems and server-side faults.  The dispatcher retries these.
- :class:`~mediaforge.core.errors.PermanentBackendError` for refusals, quota
  exhaustion and malformed requests.  The job fails immediately.

Any other exception is treated as permanent.

Progress
--------
``invoke`` receives a ``report`` callable.  Backends call it with short
human-readable strings; throttling is the dispatcher's job.  ``report`` must
be called from the event loop thread.

Usage Example
-------------
    >>> from mediaforge.core.backends import backend_registry
    >>> backend = backend_registry.instantiate("placeholder", Mode.IMAGE, config)
    >>> output = await backend.invoke("a red circle", JobOptions(), print)
    >>> output.mime
    'image/png'
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from mediaforge.core.config import MediaforgeConfig
from mediaforge.core.jobs import JobOptions, Mode

logger = logging.getLogger(__name__)

ProgressReporter = Callable[[str], None]


@dataclass(frozen=True)
class BackendOutput:
    """Bytes produced by a backend and their mime type."""

    data: bytes
    mime: str


class ModelBackend(ABC):
    """Abstract base class for model backends.

    Attributes
    ----------
    name : str
        Registry key of the backend kind
    description : str
        Brief description of the backend
    mode : Mode
        Mode this instance serves
    config : MediaforgeConfig
        Application configuration
    """

    name: str = "base"
    description: str = "Base class for model backends"

    def __init__(self, mode: Mode, config: MediaforgeConfig) -> None:
        self.mode = mode
        self.config = config

    @abstractmethod
    async def invoke(
        self, prompt: str, options: JobOptions, report: ProgressReporter
    ) -> BackendOutput:
        """Generate output for *prompt*.

        Args:
            prompt: Moderated user prompt.
            options: Rendering options of the job.
            report: Progress callback.

        Returns:
            The generated bytes and their mime type.

        Raises:
            TransientBackendError: Retry-eligible failure.
            PermanentBackendError: Non-retryable failure.
        """

    async def close(self) -> None:
        """Release held resources.  Called once on orchestrator shutdown."""

    def get_info(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "mode": self.mode.value}


class BackendRegistry:
    """Registry mapping backend kind names to :class:`ModelBackend` classes."""

    def __init__(self) -> None:
        self._backends: dict[str, type[ModelBackend]] = {}

    def register(self, backend_class: type[ModelBackend]) -> type[ModelBackend]:
        """Register *backend_class* under its ``name``.  Usable as a decorator."""
        if backend_class.name in self._backends:
            logger.warning("Backend '%s' is already registered, overwriting", backend_class.name)
        self._backends[backend_class.name] = backend_class
        logger.debug("Registered backend: %s", backend_class.name)
        return backend_class

    def instantiate(self, kind: str, mode: Mode, config: MediaforgeConfig) -> ModelBackend:
        """Create a backend of *kind* serving *mode*.

        Raises
        ------
        KeyError
            If *kind* is not registered
        """
        if kind not in self._backends:
            available = ", ".join(self.list_available())
            raise KeyError(f"Backend '{kind}' not found. Available backends: {available}")
        backend = self._backends[kind](mode=mode, config=config)
        logger.info("Instantiated %s backend for %s mode", kind, mode.value)
        return backend

    def list_available(self) -> list[str]:
        return list(self._backends.keys())


backend_registry = BackendRegistry()


def build_backend_table(config: MediaforgeConfig) -> dict[Mode, ModelBackend]:
    """Instantiate the configured backend for every mode."""
    return {
        mode: backend_registry.instantiate(config.backend_for(mode), mode, config) for mode in Mode
    }
