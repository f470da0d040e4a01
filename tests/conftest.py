"""Shared test fixtures."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from auto_resume.queue.cache import QueueCache
from auto_resume.queue.store import QueueStore


class FakeClock:
    """Settable wall clock shared by store, cache, retry and backoff under test."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeMonotonic:
    """Monotonic clock whose sleep only moves time forward."""

    def __init__(self) -> None:
        self.value = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.value

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.value += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 10, 0, tzinfo=UTC))


@pytest.fixture()
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture()
def queue_dir(tmp_path: Path) -> Path:
    return tmp_path / "queue"


@pytest.fixture()
def store(queue_dir: Path, clock: FakeClock) -> QueueStore:
    return QueueStore(queue_dir, retry_delay_seconds=0, clock=clock)


@pytest.fixture()
def cache(store: QueueStore, clock: FakeClock) -> QueueCache:
    return QueueCache(store, clock=clock)
