"""
Pytest configuration and shared fixtures.

Tests run against a fresh SQLite file per test by default. Set
TEST_DATABASE_URL to run them against PostgreSQL instead; the schema is
dropped and recreated for every test.
"""

import os
from collections.abc import AsyncGenerator, Generator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from jobqueue.clock import utc_now
from jobqueue.config import get_settings
from jobqueue.db.connection import create_session_factory, get_test_engine
from jobqueue.db.models import EXECUTION_MODELS, Base, Job
from jobqueue.db.repository import JobRepository
from jobqueue.types.job import JobDescription

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime | None = None):
        self.now = now or utc_now().replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def travel(self, delta: timedelta) -> datetime:
        self.now += delta
        return self.now


@pytest.fixture(autouse=True)
def fresh_settings() -> Generator[None]:
    """Reload settings for every test so monkeypatched env vars apply."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """Get the test database URL."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'jobqueue.db'}"


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an async database engine with an empty schema."""
    engine = get_test_engine(database_url)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory for code under test that opens its own sessions."""
    return create_session_factory(async_engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a database session for tests."""
    async with session_factory() as session:
        yield session

        # Rollback any uncommitted changes
        await session.rollback()


@pytest.fixture
def clock() -> FrozenClock:
    """A controllable clock shared by repositories in a test."""
    return FrozenClock()


@pytest.fixture
def repo(db_session: AsyncSession, clock: FrozenClock) -> JobRepository:
    """Create a repository instance."""
    return JobRepository(db_session, clock=clock)


def describe_job(class_name: str = "AddToBufferJob", **fields: Any) -> JobDescription:
    """Build a job description with test defaults."""
    return JobDescription(class_name=class_name, **fields)


def keyed_job(
    key: str = "NonOverlappingJob/result-1",
    class_name: str = "NonOverlappingJob",
    **fields: Any,
) -> JobDescription:
    """Build a concurrency-limited job description."""
    return JobDescription(class_name=class_name, concurrency_key=key, **fields)


async def job_counts(session: AsyncSession) -> dict[str, int]:
    """Count execution records per state, plus the jobs table."""
    counts = {}
    for status, model in EXECUTION_MODELS.items():
        counts[status.value] = (
            await session.execute(select(func.count()).select_from(model))
        ).scalar_one()
    counts["jobs"] = (await session.execute(select(func.count()).select_from(Job))).scalar_one()
    return counts


def difference(before: dict[str, int], after: dict[str, int]) -> dict[str, int]:
    """Non-zero changes between two job_counts snapshots."""
    return {name: after[name] - before[name] for name in after if after[name] != before[name]}
