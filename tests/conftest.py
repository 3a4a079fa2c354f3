"""
Shared fixtures: a manual scheduler, a recording backend and a running dispatcher.
"""
import asyncio
from concurrent.futures import wait

import pytest

from backend import UpsertBackend
from config import LoadConfig, RunnerConfig
from metrics import MetricsCollector
from scheduler import AsyncDispatcher


class ManualScheduler:
    """Keeps registrations and only fires them when asked."""

    def __init__(self):
        self.registrations = []
        self.shut_down = False

    def schedule(self, callback, period, name=None):
        self.registrations.append((callback, period, name))

    def callbacks(self, period):
        return [callback for callback, p, _ in self.registrations if p == period]

    def fire(self, period):
        results = []
        for callback in self.callbacks(period):
            results.append(callback())
        return results

    def shutdown(self, timeout=5.0):
        self.shut_down = True


class RecordingBackend(UpsertBackend):
    """Always-succeeding backend that remembers every upsert."""

    def __init__(self, fail_keys=None, connect_error=None, delay=0.0):
        self.writes = []
        self.store = {}
        self.fail_keys = set(fail_keys or [])
        self.connect_error = connect_error
        self.delay = delay
        self.connected = False
        self.closed = False

    async def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def upsert(self, key, value):
        if self.delay:
            await asyncio.sleep(self.delay)
        if key in self.fail_keys:
            raise ConnectionError(f"write to {key} refused")
        self.writes.append(key)
        self.store[key] = value

    async def close(self):
        self.closed = True


def wait_all(future_lists, timeout=5.0):
    futures = [future for futures in future_lists for future in futures]
    done, not_done = wait(futures, timeout=timeout)
    assert not not_done
    return [future.result() for future in done]


@pytest.fixture
def manual_scheduler():
    return ManualScheduler()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def dispatcher():
    dispatcher = AsyncDispatcher()
    dispatcher.start()
    yield dispatcher
    dispatcher.stop()


@pytest.fixture
def scenario_config():
    """Two clients, 200 keys rewritten every 10 seconds, 16 byte values."""
    return RunnerConfig(
        backend="memory",
        quiet=True,
        load=LoadConfig(
            client_count=2,
            uid_count=200,
            write_interval_seconds=10,
            value_length=16,
        ),
    )
