"""
Shared fixtures for the quota scheduler test suite.
"""

import pytest

from quota_scheduler.backends.memory import MemoryReservationStore
from quota_scheduler.scheduler import ReservationScheduler, SchedulerConfig

START_MS = 1_700_000_000_000


class FakeClock:
    """Deterministic clock returning seconds, advanced explicitly in milliseconds."""

    def __init__(self, start_ms: int = START_MS) -> None:
        self.now_ms = start_ms

    def __call__(self) -> float:
        return self.now_ms / 1000

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryReservationStore(namespace="test")


@pytest.fixture
def make_scheduler(clock, memory_store):
    """Build a scheduler over the memory store and fake clock."""

    def _make(**config_kwargs) -> ReservationScheduler:
        config = SchedulerConfig(namespace="test", **config_kwargs)
        return ReservationScheduler(memory_store, config, clock=clock)

    return _make
