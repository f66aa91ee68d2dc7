"""
Shared fixtures for the market_cache tests.
"""

import pytest


class FakeClock:
    """Manually advanced time source for deterministic TTL tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
