"""
Integration tests for the dispatcher and janitor processes.
"""

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from conftest import FrozenClock, describe_job, keyed_job
from jobqueue.config import get_settings
from jobqueue.constants import ExecutionStatus
from jobqueue.db import get_session_context
from jobqueue.db.repository import JobRepository
from jobqueue.dispatcher import Dispatcher
from jobqueue.janitor import Janitor, MaintenanceReport


class TestDispatcher:
    """Tests for the scheduled job dispatcher."""

    async def test_dispatches_due_jobs(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: FrozenClock,
    ):
        """Test that due jobs become ready and future jobs stay scheduled."""
        async with get_session_context(session_factory) as session:
            repo = JobRepository(session, clock=clock)
            soon = await repo.enqueue(describe_job(), scheduled_at=clock.now + timedelta(minutes=1))
            later = await repo.enqueue(describe_job(), scheduled_at=clock.now + timedelta(hours=1))

        dispatcher = Dispatcher(batch_size=10, session_factory=session_factory, clock=clock)
        assert await dispatcher.run_once() == 0

        clock.travel(timedelta(minutes=2))
        assert await dispatcher.run_once() == 1

        async with get_session_context(session_factory) as session:
            repo = JobRepository(session, clock=clock)
            assert await repo.status(soon.id) == ExecutionStatus.READY
            assert await repo.status(later.id) == ExecutionStatus.SCHEDULED

    async def test_due_job_blocks_on_held_key(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: FrozenClock,
    ):
        """Test that a due job whose key is held is blocked rather than ready."""
        async with get_session_context(session_factory) as session:
            repo = JobRepository(session, clock=clock)
            await repo.enqueue(keyed_job())
            scheduled = await repo.enqueue(keyed_job(), scheduled_at=clock.now + timedelta(seconds=30))

        clock.travel(timedelta(minutes=1))
        await Dispatcher(batch_size=10, session_factory=session_factory, clock=clock).run_once()

        async with get_session_context(session_factory) as session:
            status = await JobRepository(session, clock=clock).status(scheduled.id)
        assert status == ExecutionStatus.BLOCKED


class TestJanitor:
    """Tests for the concurrency maintenance process."""

    async def test_nothing_to_do(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: FrozenClock,
    ):
        """Test a run over an idle queue."""
        janitor = Janitor(session_factory=session_factory, clock=clock)

        assert await janitor.run_once() == MaintenanceReport()

    async def test_recovers_abandoned_slots(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: FrozenClock,
    ):
        """Test that a crashed worker's slot is reset and handed to a waiter."""
        async with get_session_context(session_factory) as session:
            repo = JobRepository(session, clock=clock)
            await repo.enqueue(keyed_job())
            waiter = await repo.enqueue(keyed_job())

        async with get_session_context(session_factory) as session:
            await JobRepository(session, clock=clock).claim_next(["*"], 1, "crashed-worker")

        clock.travel(timedelta(minutes=4))
        report = await Janitor(session_factory=session_factory, clock=clock).run_once()

        assert report.semaphores_released == 1
        async with get_session_context(session_factory) as session:
            status = await JobRepository(session, clock=clock).status(waiter.id)
        assert status == ExecutionStatus.READY

    async def test_clears_old_finished_jobs(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: FrozenClock,
        monkeypatch: pytest.MonkeyPatch,
    ):
        """Test that preserved finished jobs are cleared after the retention period."""
        monkeypatch.setenv("PRESERVE_FINISHED_JOBS", "true")
        monkeypatch.setenv("CLEAR_FINISHED_JOBS_AFTER_SECONDS", "3600")
        get_settings.cache_clear()

        async with get_session_context(session_factory) as session:
            repo = JobRepository(session, clock=clock)
            await repo.enqueue(describe_job())
            [job] = await repo.claim_next(["*"], 1, "worker-1")
            await repo.finish(job)

        janitor = Janitor(session_factory=session_factory, clock=clock)
        assert (await janitor.run_once()).finished_jobs_cleared == 0

        clock.travel(timedelta(hours=2))
        assert (await janitor.run_once()).finished_jobs_cleared == 1

        async with get_session_context(session_factory) as session:
            assert await JobRepository(session, clock=clock).get_job(job.id) is None
