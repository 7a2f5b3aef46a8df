"""Shared pytest fixtures for moneysync tests.

This module provides the profile cleanup used across the suite, a controllable
clock, and the sync stack wired against a DuckDB file under ``tmp_path`` and
the in-process server of record.
"""

from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from moneysync.config import clear_settings_cache, set_current_profile
from moneysync.database import SyncDatabase
from moneysync.sync.change_queue import ChangeQueueStore
from moneysync.sync.cursors import CursorTracker
from moneysync.sync.engine import SyncEngine
from moneysync.sync.events import SyncEventBus
from moneysync.sync.local_store import LocalEntityStore
from moneysync_server import LocalSyncServer

DEVICE = "device-a"
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


def at(seconds: float) -> datetime:
    """Timestamp ``seconds`` after T0."""
    return T0 + timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def clean_profile_state() -> Generator[None, None, None]:
    """Clear the settings cache and reset the current profile around each test."""
    clear_settings_cache()
    set_current_profile("test")

    yield

    clear_settings_cache()
    set_current_profile("test")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db(tmp_path: Path) -> Generator[SyncDatabase, None, None]:
    database = SyncDatabase(tmp_path / "state.duckdb")
    yield database
    database.close()


@pytest.fixture
def queue(db: SyncDatabase, clock: FakeClock) -> ChangeQueueStore:
    return ChangeQueueStore(db, max_retries=5, clock=clock)


@pytest.fixture
def cursors(db: SyncDatabase, clock: FakeClock) -> CursorTracker:
    return CursorTracker(db, clock=clock)


@pytest.fixture
def local_store(
    db: SyncDatabase, queue: ChangeQueueStore, clock: FakeClock
) -> LocalEntityStore:
    return LocalEntityStore(db, queue, clock=clock)


@pytest.fixture
def server(clock: FakeClock) -> LocalSyncServer:
    return LocalSyncServer(clock=clock)


@pytest.fixture
def events() -> SyncEventBus:
    return SyncEventBus()


@pytest.fixture
def engine(
    db: SyncDatabase,
    queue: ChangeQueueStore,
    cursors: CursorTracker,
    local_store: LocalEntityStore,
    server: LocalSyncServer,
    events: SyncEventBus,
    clock: FakeClock,
) -> SyncEngine:
    return SyncEngine(
        db,
        queue,
        cursors,
        local_store,
        server,
        events=events,
        push_timeout=2.0,
        pull_timeout=2.0,
        clock=clock,
    )
