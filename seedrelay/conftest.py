"""Shared pytest fixtures for SEEDRELAY tests."""

import time

import pytest


@pytest.fixture
def anyio_backend():
    """Run async tests on asyncio only."""
    return "asyncio"


class FakeClock:
    """Manually advanced clock for session expiry tests."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    """Clock starting at the real current time, so signed tokens stay valid."""
    return FakeClock(time.time())
