"""
Shared fixtures.
"""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from scan_engine.clock import MockClock
from scan_engine.config import DatabaseConfig
from storage import Database, ScanStore


START_TIME = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    """Mock clock pinned to a fixed start time."""
    return MockClock(START_TIME)


@pytest_asyncio.fixture
async def database(tmp_path):
    """File-backed sqlite database, fresh per test."""
    db = Database(DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path}/scans.db"))
    await db.connect()
    yield db
    await db.disconnect()


@pytest_asyncio.fixture
async def store(database, clock):
    """ScanStore on the per-test database."""
    return ScanStore(database, clock)
