"""Shared fixtures: SQLite-backed stores, a controllable clock and a polling helper."""

import threading
import time
from datetime import datetime, timedelta

import pytest

from rollcall.hall import PresenceRegistry
from rollcall.registry import SQLStore


class FakeClock:
    """Thread-safe clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> datetime:
        with self._lock:
            self._now += timedelta(seconds=seconds)
            return self._now


def _wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dsn(tmp_path):
    return f"sqlite:///{tmp_path / 'rollcall.db'}"


@pytest.fixture
def store(dsn):
    s = SQLStore(dsn, "test")
    s.create_table_if_absent()
    yield s
    s.close()


@pytest.fixture
def registry(dsn, clock):
    """Initialised registry on the fake clock; the gc loop is parked so tests sweep explicitly."""
    reg = PresenceRegistry(
        SQLStore(dsn, "test"),
        heartbeat_interval=1.0,
        max_batch_size=10,
        flush_interval=0.05,
        gc_interval=3600,
        clock=clock,
    )
    reg.init()
    yield reg
    reg.close()
