"""Retry and progress-throttling policies used by the worker dispatcher.

Both are small value objects so they can be unit tested without a backend
or an event loop.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

from .errors import TransientBackendError


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for transient backend failures.

    Attributes:
        max_attempts: Total invocations allowed, including the first one.
        base_delay: Delay in seconds before the second attempt.
        multiplier: Growth factor applied per further attempt.
        max_delay: Upper bound on any single delay.
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        """Whether a failure on *attempt* (1-based) deserves another try."""
        return isinstance(error, TransientBackendError) and attempt < self.max_attempts

    def delay_for(self, attempt: int) -> float:
        """Backoff in seconds after failed *attempt* (1-based)."""
        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))

    @classmethod
    def from_config(cls, config) -> RetryPolicy:
        return cls(
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_base_delay,
            multiplier=config.retry_multiplier,
            max_delay=config.retry_max_delay,
        )


class ProgressThrottle:
    """Let at most one progress update through per *interval* seconds.

    The first update always passes.  Updates arriving inside the interval are
    dropped rather than buffered; the next update after the interval wins.
    """

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.interval = interval
        self._clock = clock
        self._last: float | None = None

    def allow(self) -> bool:
        now = self._clock()
        if self._last is not None and now - self._last < self.interval:
            return False
        self._last = now
        return True
