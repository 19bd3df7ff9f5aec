"""Tests for mediaforge.core.retry — backoff policy and progress throttle."""

from __future__ import annotations

import pytest

from mediaforge.core.errors import PermanentBackendError, TransientBackendError
from mediaforge.core.retry import ProgressThrottle, RetryPolicy


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestRetryPolicy:
    def test_exponential_delays(self):
        policy = RetryPolicy(max_attempts=5, base_delay=0.5, multiplier=2.0, max_delay=8.0)
        assert [policy.delay_for(n) for n in range(1, 5)] == [0.5, 1.0, 2.0, 4.0]

    def test_delay_is_capped(self):
        policy = RetryPolicy(max_attempts=10, base_delay=1.0, multiplier=3.0, max_delay=5.0)
        assert policy.delay_for(4) == 5.0

    def test_retries_transient_until_budget(self):
        policy = RetryPolicy(max_attempts=3)
        error = TransientBackendError("HTTP 503")
        assert policy.should_retry(1, error)
        assert policy.should_retry(2, error)
        assert not policy.should_retry(3, error)

    @pytest.mark.parametrize(
        "error",
        [PermanentBackendError("quota exhausted"), ValueError("bug"), RuntimeError("boom")],
    )
    def test_never_retries_other_errors(self, error):
        assert not RetryPolicy(max_attempts=5).should_retry(1, error)

    def test_from_config(self, test_config):
        policy = RetryPolicy.from_config(test_config)
        assert policy.max_attempts == test_config.retry_max_attempts
        assert policy.base_delay == test_config.retry_base_delay


class TestProgressThrottle:
    def test_first_update_passes(self):
        assert ProgressThrottle(1.0, clock=FakeClock()).allow()

    def test_drops_updates_inside_interval(self):
        clock = FakeClock()
        throttle = ProgressThrottle(1.0, clock=clock)
        assert throttle.allow()
        clock.now = 0.4
        assert not throttle.allow()
        clock.now = 0.99
        assert not throttle.allow()
        clock.now = 1.0
        assert throttle.allow()

    def test_zero_interval_passes_everything(self):
        throttle = ProgressThrottle(0.0, clock=FakeClock())
        assert all(throttle.allow() for _ in range(5))
