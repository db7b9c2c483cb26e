"""
Unit tests for the claim/finish/fail interface used by workers.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import FrozenClock, describe_job, difference, job_counts, keyed_job
from jobqueue.config import get_settings
from jobqueue.constants import ConflictPolicy, ExecutionStatus
from jobqueue.db.models import ClaimedExecution, FailedExecution
from jobqueue.db.repository import JobRepository
from jobqueue.errors import JobNotFoundError

KEY = "NonOverlappingJob/result-1"


class TestClaimNext:
    """Tests for JobRepository.claim_next."""

    async def test_claim_moves_ready_to_claimed(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test that claimed jobs leave ready and record the claiming process."""
        job = await repo.enqueue(describe_job())
        before = await job_counts(db_session)

        claimed = await repo.claim_next(["*"], 10, "worker-1")

        assert [c.id for c in claimed] == [job.id]
        assert difference(before, await job_counts(db_session)) == {"ready": -1, "claimed": 1}
        execution = (await db_session.execute(select(ClaimedExecution))).scalar_one()
        assert execution.process_id == "worker-1"

    async def test_claim_order_is_priority_then_fifo(self, repo: JobRepository):
        """Test that the most urgent jobs are claimed first, oldest first within a priority."""
        low = await repo.enqueue(describe_job(priority=75))
        normal_first = await repo.enqueue(describe_job(priority=50))
        critical = await repo.enqueue(describe_job(priority=0))
        normal_second = await repo.enqueue(describe_job(priority=50))

        claimed = await repo.claim_next(["*"], 10, "worker-1")

        assert [job.id for job in claimed] == [
            critical.id,
            normal_first.id,
            normal_second.id,
            low.id,
        ]

    async def test_claim_respects_limit(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test that at most `limit` jobs are claimed."""
        for _ in range(5):
            await repo.enqueue(describe_job())

        claimed = await repo.claim_next(["*"], 2, "worker-1")

        assert len(claimed) == 2
        counts = await job_counts(db_session)
        assert counts["ready"] == 3
        assert counts["claimed"] == 2

    async def test_claim_filters_queues(self, repo: JobRepository):
        """Test that only the requested queues are polled."""
        background = await repo.enqueue(describe_job(queue_name="background"))
        await repo.enqueue(describe_job(queue_name="default"))
        mailers = await repo.enqueue(describe_job(queue_name="mailers"))

        claimed = await repo.claim_next(["background", "mailers"], 10, "worker-1")

        assert sorted(job.id for job in claimed) == sorted([background.id, mailers.id])

    async def test_claim_from_empty_queue(self, repo: JobRepository):
        """Test that nothing is claimed when nothing is ready."""
        assert await repo.claim_next(["*"], 10, "worker-1") == []

    @pytest.mark.parametrize("limit", [0, -1])
    async def test_claim_rejects_non_positive_limit(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
        limit: int,
    ):
        """Test that a limit below one claims nothing."""
        for _ in range(3):
            await repo.enqueue(describe_job())

        with pytest.raises(ValueError):
            await repo.claim_next(["*"], limit, "worker-1")

        assert (await job_counts(db_session))["ready"] == 3

    async def test_claimed_jobs_never_exceed_limit(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test that blocked jobs are not claimable."""
        for _ in range(3):
            await repo.enqueue(keyed_job(concurrency_limit=2))

        claimed = await repo.claim_next(["*"], 10, "worker-1")

        assert len(claimed) == 2
        assert (await job_counts(db_session))["blocked"] == 1


class TestFinish:
    """Tests for JobRepository.finish."""

    async def test_finish_deletes_job(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test that finished jobs are deleted by default."""
        await repo.enqueue(describe_job())
        [job] = await repo.claim_next(["*"], 1, "worker-1")
        before = await job_counts(db_session)

        await repo.finish(job)

        assert difference(before, await job_counts(db_session)) == {"claimed": -1, "jobs": -1}
        assert await repo.status(job.id) is None

    async def test_finish_preserves_job(
        self,
        db_session: AsyncSession,
        clock: FrozenClock,
        monkeypatch: pytest.MonkeyPatch,
    ):
        """Test that finished jobs are kept when configured to."""
        monkeypatch.setenv("PRESERVE_FINISHED_JOBS", "true")
        get_settings.cache_clear()
        repo = JobRepository(db_session, clock=clock)

        await repo.enqueue(describe_job())
        [job] = await repo.claim_next(["*"], 1, "worker-1")
        await repo.finish(job)

        assert await repo.status(job.id) == ExecutionStatus.FINISHED
        stored = await repo.get_job(job.id)
        assert stored.finished_at == clock.now

    async def test_finish_releases_and_promotes(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test that finishing a slot holder promotes the oldest blocked job."""
        await repo.enqueue(keyed_job())
        waiter = await repo.enqueue(keyed_job())
        [job] = await repo.claim_next(["*"], 1, "worker-1")

        await repo.finish(job)

        assert await repo.status(waiter.id) == ExecutionStatus.READY
        assert (await repo.semaphores.get(KEY)).value == 0

    async def test_finish_last_holder_frees_slot(self, repo: JobRepository):
        """Test that finishing the last holder restores the semaphore."""
        await repo.enqueue(keyed_job())
        [job] = await repo.claim_next(["*"], 1, "worker-1")

        await repo.finish(job)

        semaphore = await repo.semaphores.get(KEY)
        assert semaphore.value == 1
        assert semaphore.expires_at is None

    async def test_finish_unclaimed_job(self, repo: JobRepository):
        """Test that only claimed jobs can be finished."""
        job = await repo.enqueue(describe_job())

        with pytest.raises(JobNotFoundError):
            await repo.finish(job)

        assert await repo.status(job.id) == ExecutionStatus.READY


class TestFailAndRetry:
    """Tests for JobRepository.fail and JobRepository.retry."""

    async def test_fail_records_error(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test that failed jobs keep the error for the retry policy."""
        await repo.enqueue(describe_job())
        [job] = await repo.claim_next(["*"], 1, "worker-1")
        before = await job_counts(db_session)

        await repo.fail(job, "RuntimeError: boom")

        assert difference(before, await job_counts(db_session)) == {"claimed": -1, "failed": 1}
        failed = (await db_session.execute(select(FailedExecution))).scalar_one()
        assert failed.job_id == job.id
        assert failed.error == "RuntimeError: boom"
        assert await repo.status(job.id) == ExecutionStatus.FAILED

    async def test_fail_releases_and_promotes(self, repo: JobRepository):
        """Test that failing a slot holder promotes the oldest blocked job."""
        await repo.enqueue(keyed_job())
        waiter = await repo.enqueue(keyed_job())
        [job] = await repo.claim_next(["*"], 1, "worker-1")

        await repo.fail(job, "boom")

        assert await repo.status(waiter.id) == ExecutionStatus.READY

    async def test_retry_failed_job(self, repo: JobRepository):
        """Test that a retried job is ready again."""
        await repo.enqueue(describe_job())
        [job] = await repo.claim_next(["*"], 1, "worker-1")
        await repo.fail(job, "boom")

        assert await repo.retry(job) == ExecutionStatus.READY
        assert await repo.status(job.id) == ExecutionStatus.READY

    async def test_retry_checks_concurrency_again(self, repo: JobRepository):
        """Test that a retried job blocks if its key was taken meanwhile."""
        await repo.enqueue(keyed_job())
        [job] = await repo.claim_next(["*"], 1, "worker-1")
        await repo.fail(job, "boom")
        await repo.enqueue(keyed_job())

        assert await repo.retry(job) == ExecutionStatus.BLOCKED

    async def test_retry_discards_on_conflict(self, repo: JobRepository):
        """Test that a retried discardable job is dropped if its key is full."""
        await repo.enqueue(keyed_job(on_conflict=ConflictPolicy.DISCARD))
        [job] = await repo.claim_next(["*"], 1, "worker-1")
        await repo.fail(job, "boom")
        await repo.enqueue(keyed_job(on_conflict=ConflictPolicy.DISCARD))

        assert await repo.retry(job) is None
        assert await repo.get_job(job.id) is None

    async def test_retry_job_that_did_not_fail(self, repo: JobRepository):
        """Test that only failed jobs can be retried."""
        job = await repo.enqueue(describe_job())

        with pytest.raises(JobNotFoundError):
            await repo.retry(job)


class TestDiagnostics:
    """Tests for status counts."""

    async def test_count_by_status(
        self,
        repo: JobRepository,
        clock: FrozenClock,
    ):
        """Test counts per execution state, overall and per queue."""
        await repo.enqueue(describe_job())
        await repo.enqueue(describe_job(queue_name="background"))
        await repo.enqueue(describe_job(), scheduled_at=clock.now + timedelta(minutes=5))
        await repo.enqueue(keyed_job(queue_name="background"))
        await repo.enqueue(keyed_job(queue_name="background"))
        await repo.claim_next(["default"], 1, "worker-1")

        counts = await repo.count_by_status()
        assert counts == {
            ExecutionStatus.READY: 2,
            ExecutionStatus.SCHEDULED: 1,
            ExecutionStatus.BLOCKED: 1,
            ExecutionStatus.CLAIMED: 1,
            ExecutionStatus.FAILED: 0,
        }
        assert counts["ready"] == 2

        background = await repo.count_by_status("background")
        assert background[ExecutionStatus.READY] == 2
        assert background[ExecutionStatus.BLOCKED] == 1
        assert background[ExecutionStatus.SCHEDULED] == 0

    async def test_queue_stats(
        self,
        repo: JobRepository,
        clock: FrozenClock,
    ):
        """Test counts per queue and state."""
        await repo.enqueue(describe_job())
        await repo.enqueue(describe_job(queue_name="background"))
        await repo.enqueue(describe_job(queue_name="background"), scheduled_at=clock.now + timedelta(minutes=1))

        stats = await repo.queue_stats()

        assert stats["default"]["ready"] == 1
        assert stats["background"] == {
            "ready": 1,
            "scheduled": 1,
            "blocked": 0,
            "claimed": 0,
            "failed": 0,
        }
