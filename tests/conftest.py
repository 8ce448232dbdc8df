"""Shared fixtures: a manual clock and file-backed SQLite lock stores."""

from __future__ import annotations

from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from cronguard import store
from cronguard.config import get_settings
from cronguard.locks import LockManager


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0.0, **kwargs) -> None:
        self.current += timedelta(seconds=seconds, **kwargs)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'cronguard.db'}"


@pytest.fixture
def make_lock_manager(db_url, clock):
    """Build managers on the same store, each standing in for one process."""
    managers: list[LockManager] = []

    def _make() -> LockManager:
        manager = LockManager.from_url(db_url, clock=clock)
        store.ensure_schema(manager.engine)
        managers.append(manager)
        return manager

    yield _make
    for manager in managers:
        manager.dispose()


@pytest.fixture
def lock_manager(make_lock_manager) -> LockManager:
    return make_lock_manager()


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
