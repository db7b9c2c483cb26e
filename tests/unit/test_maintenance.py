"""
Unit tests for concurrency maintenance and blocked job promotion.
"""

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import FrozenClock, describe_job, keyed_job
from jobqueue.config import get_settings
from jobqueue.constants import ExecutionStatus
from jobqueue.db.repository import JobRepository

KEY = "NonOverlappingJob/result-1"


class TestPromoteBlocked:
    """Tests for JobRepository.promote_blocked."""

    async def test_nothing_blocked(self, repo: JobRepository):
        """Test promoting a key without waiters."""
        assert await repo.promote_blocked(KEY) is None

    async def test_no_free_slot(self, repo: JobRepository):
        """Test that waiters stay blocked while the key is held."""
        await repo.enqueue(keyed_job())
        waiter = await repo.enqueue(keyed_job())

        assert await repo.promote_blocked(KEY) is None
        assert await repo.status(waiter.id) == ExecutionStatus.BLOCKED

    async def test_promotes_oldest_waiter(
        self,
        repo: JobRepository,
        clock: FrozenClock,
    ):
        """Test that the oldest waiter takes a freed slot and gets a fresh lease."""
        await repo.enqueue(keyed_job())
        oldest = await repo.enqueue(keyed_job())
        newest = await repo.enqueue(keyed_job())
        await repo.semaphores.release(KEY)
        clock.travel(timedelta(seconds=30))

        promoted = await repo.promote_blocked(KEY)

        assert promoted.id == oldest.id
        assert promoted.lease_expires_at == clock.now + timedelta(minutes=3)
        assert await repo.status(oldest.id) == ExecutionStatus.READY
        assert await repo.status(newest.id) == ExecutionStatus.BLOCKED


class TestUnblockExpired:
    """Tests for JobRepository.unblock_expired."""

    async def test_unblock_after_holder_lease_expired(
        self,
        repo: JobRepository,
        clock: FrozenClock,
    ):
        """Test that a waiter past its expiry takes over an abandoned key."""
        await repo.enqueue(keyed_job())
        waiter = await repo.enqueue(keyed_job())

        clock.travel(timedelta(minutes=4))

        assert await repo.unblock_expired() == 1
        assert await repo.status(waiter.id) == ExecutionStatus.READY

    async def test_waiter_not_expired_yet(
        self,
        repo: JobRepository,
        clock: FrozenClock,
    ):
        """Test that waiters within their expiry are left alone."""
        await repo.enqueue(keyed_job())
        waiter = await repo.enqueue(keyed_job())

        clock.travel(timedelta(minutes=1))

        assert await repo.unblock_expired() == 0
        assert await repo.status(waiter.id) == ExecutionStatus.BLOCKED

    async def test_live_lease_keeps_waiter_blocked(
        self,
        repo: JobRepository,
        clock: FrozenClock,
    ):
        """Test that an expired waiter still needs a free slot."""
        await repo.enqueue(keyed_job(concurrency_duration=timedelta(minutes=10)))
        waiter = await repo.enqueue(keyed_job(concurrency_duration=timedelta(minutes=1)))

        clock.travel(timedelta(minutes=2))

        assert await repo.unblock_expired() == 0
        assert await repo.status(waiter.id) == ExecutionStatus.BLOCKED


class TestReleaseExpiredSemaphores:
    """Tests for JobRepository.release_expired_semaphores."""

    async def test_release_abandoned_key(
        self,
        repo: JobRepository,
        clock: FrozenClock,
    ):
        """Test that a crashed holder's slot is recovered and handed to waiters."""
        description = keyed_job(concurrency_limit=2)
        await repo.enqueue(description)
        await repo.enqueue(description)
        first_waiter = await repo.enqueue(description)
        second_waiter = await repo.enqueue(description)
        third_waiter = await repo.enqueue(description)
        await repo.claim_next(["*"], 2, "crashed-worker")

        clock.travel(timedelta(minutes=4))

        assert await repo.release_expired_semaphores() == 1
        assert await repo.status(first_waiter.id) == ExecutionStatus.READY
        assert await repo.status(second_waiter.id) == ExecutionStatus.READY
        assert await repo.status(third_waiter.id) == ExecutionStatus.BLOCKED
        assert (await repo.semaphores.get(KEY)).value == 0

    async def test_live_leases_are_kept(
        self,
        repo: JobRepository,
        clock: FrozenClock,
    ):
        """Test that semaphores within their lease are not touched."""
        await repo.enqueue(keyed_job())
        clock.travel(timedelta(minutes=1))

        assert await repo.release_expired_semaphores() == 0
        assert (await repo.semaphores.get(KEY)).value == 0


class TestClearFinished:
    """Tests for JobRepository.clear_finished."""

    async def test_clear_old_finished_jobs(
        self,
        db_session: AsyncSession,
        clock: FrozenClock,
        monkeypatch: pytest.MonkeyPatch,
    ):
        """Test that only finished jobs past the retention period are deleted."""
        monkeypatch.setenv("PRESERVE_FINISHED_JOBS", "true")
        get_settings.cache_clear()
        repo = JobRepository(db_session, clock=clock)

        await repo.enqueue(describe_job())
        [old] = await repo.claim_next(["*"], 1, "worker-1")
        await repo.finish(old)

        clock.travel(timedelta(days=2))
        await repo.enqueue(describe_job())
        [recent] = await repo.claim_next(["*"], 1, "worker-1")
        await repo.finish(recent)
        pending = await repo.enqueue(describe_job())

        assert await repo.clear_finished(timedelta(days=1)) == 1
        assert await repo.get_job(old.id) is None
        assert await repo.status(recent.id) == ExecutionStatus.FINISHED
        assert await repo.status(pending.id) == ExecutionStatus.READY
