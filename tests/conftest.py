"""Shared test fixtures."""

from __future__ import annotations

import os
import threading
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from media_relay.queue.store import TaskStore


class FakeClock:
    """Manually advanced UTC clock for store timestamps."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, delta: timedelta) -> None:
        with self._lock:
            self._now += delta


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(tmp_path: Path, clock: FakeClock) -> Iterator[TaskStore]:
    task_store = TaskStore(tmp_path / "queue.db", clock=clock)
    task_store.init_schema()
    try:
        yield task_store
    finally:
        task_store.close()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host MEDIA_RELAY_* variables out of settings-driven tests."""

    for name in list(os.environ):
        if name.startswith("MEDIA_RELAY_"):
            monkeypatch.delenv(name, raising=False)
