"""Shared fixtures for the registry tests."""

import threading
import time

import pytest

from beacon.registry import InMemoryStore, ServiceRegistry


def _wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


class Recorder:
    """Watch handler that keeps every snapshot it was given."""

    def __init__(self):
        self._lock = threading.Lock()
        self.snapshots = []

    def __call__(self, entries):
        with self._lock:
            self.snapshots.append(entries)

    @property
    def latest(self):
        with self._lock:
            return self.snapshots[-1] if self.snapshots else None

    @property
    def count(self):
        with self._lock:
            return len(self.snapshots)

    def since(self, index):
        with self._lock:
            return list(self.snapshots[index:])


@pytest.fixture
def wait_for():
    return _wait_for


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def store():
    store = InMemoryStore(keepalive_interval=0.05)
    yield store
    store.close()


@pytest.fixture
def registry(store):
    registry = ServiceRegistry(
        store,
        ttl=1,
        retry_interval=0.05,
        max_retry_interval=0.2,
        resync_interval=0.3,
        watch_retry_interval=0.05,
    )
    yield registry
    registry.close()
