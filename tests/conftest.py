from datetime import datetime, timedelta, timezone

import pytest

from relay.share_store import SQLiteShareStore
from relay.share_store_base import InMemoryShareStore


class FakeClock:
    """Wall clock for stores; only moves when advanced."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    """Monotonic seconds for the rate limiter."""

    def __init__(self, start=1000.0):
        self.value = start

    def __call__(self):
        return self.value

    def advance(self, seconds):
        self.value += seconds


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def ticks():
    return FakeMonotonic()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, clock, tmp_path):
    if request.param == "memory":
        s = InMemoryShareStore(clock=clock)
    else:
        s = SQLiteShareStore(f"sqlite:///{tmp_path / 'relay.db'}", clock=clock)
    yield s
    s.close()
