"""Shared fixtures for component-installer tests."""

import datetime

import pytest

from component_installer.store import InMemoryStore


class FakeClock:
    """A clock that only moves when told to."""

    def __init__(self) -> None:
        self.now = datetime.datetime(2026, 1, 1, tzinfo=datetime.timezone.utc)

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += datetime.timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    """Fixture for a manually advanced clock."""
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryStore:
    """Create an in-memory store for testing."""
    return InMemoryStore(clock=clock)
