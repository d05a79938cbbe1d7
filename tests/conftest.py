"""Shared fixtures."""

import pytest

from steadycall.infrastructure.logging import SteadyCallLogger


class FakeClock:
    """Monotonic clock that only moves when a test advances it."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    """Deterministic clock for breaker, limiter and token timing."""
    return FakeClock()


@pytest.fixture(autouse=True)
def reset_logger():
    """Give every test a fresh logger singleton so handlers never leak between tests."""
    yield
    SteadyCallLogger._instance = None
