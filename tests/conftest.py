"""Shared fixtures for storage-backed tests."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from fingerprint_risk.storage.database import create_engine, create_session_factory, init_models

FIXED_NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Settable clock for deterministic windows."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    """Create a clock frozen at FIXED_NOW."""
    return FakeClock()


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    """Create a plain callable returning FIXED_NOW."""
    return lambda: FIXED_NOW


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    """Create a file-backed SQLite engine with the schema in place."""
    engine = create_engine(f"sqlite:///{tmp_path / 'risk.db'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    """Create a session on the test database."""
    factory = create_session_factory(engine)
    async with factory() as session:
        yield session
