"""
Job repository for database operations.
Implements the job lifecycle: enqueue, scheduled dispatch, blocked promotion,
discard, and the claim/finish/fail interface used by workers.
"""

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.clock import Clock, as_naive_utc, utc_now
from jobqueue.config import get_settings
from jobqueue.constants import (
    ALL_QUEUES,
    ConflictPolicy,
    DEFAULT_CONCURRENCY_LIMIT,
    DISCARDABLE_STATUSES,
    SPAN_ENQUEUE_JOB,
    ExecutionStatus,
)
from jobqueue.db.models import (
    EXECUTION_MODELS,
    BlockedExecution,
    ClaimedExecution,
    FailedExecution,
    Job,
    ReadyExecution,
    ScheduledExecution,
)
from jobqueue.db.semaphores import SemaphoreRepository
from jobqueue.errors import EnqueueError, JobNotFoundError, UndiscardableError
from jobqueue.observability.metrics import get_metrics
from jobqueue.observability.tracing import create_span
from jobqueue.types.job import JobDescription

logger = logging.getLogger(__name__)


class JobRepository:
    """
    Repository for job database operations.

    A job always has at most one execution record (ready, scheduled, blocked,
    claimed or failed). Every method moves a job between records by deleting
    the old row and inserting the new one in the caller's transaction.

    Implements atomic operations for:
    - Enqueueing with concurrency checks and conflict policies
    - Promoting due scheduled jobs in batches
    - Discarding jobs and handing their slot to the next blocked job
    - Claiming, finishing and failing jobs with FOR UPDATE SKIP LOCKED
    """

    def __init__(self, session: AsyncSession, clock: Clock | None = None):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
            clock: Source of the current time. Defaults to UTC wall clock.
        """
        self._session = session
        self._clock = clock or utc_now
        self._settings = get_settings()
        self._semaphores = SemaphoreRepository(session, clock=self._clock)
        self._metrics = get_metrics()

    @property
    def semaphores(self) -> SemaphoreRepository:
        """The semaphore repository sharing this session."""
        return self._semaphores

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_job(self, job_id: int) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job ID.

        Returns:
            The Job or None if not found.
        """
        stmt = select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def status(self, job_id: int) -> ExecutionStatus | None:
        """
        Get the execution state of a job.

        Args:
            job_id: The job ID.

        Returns:
            The job's state, FINISHED for preserved finished jobs, or None if
            the job does not exist.
        """
        for status, model in EXECUTION_MODELS.items():
            stmt = select(model.id).where(model.job_id == job_id)
            if (await self._session.execute(stmt)).first() is not None:
                return status

        stmt = select(Job.finished_at).where(Job.id == job_id)
        row = (await self._session.execute(stmt)).first()
        if row is not None and row.finished_at is not None:
            return ExecutionStatus.FINISHED
        return None

    # ------------------------------------------------------------------
    # Enqueue path
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        description: JobDescription,
        scheduled_at: datetime | None = None,
    ) -> Job | None:
        """
        Persist a job and place it in its initial execution state.

        Runs in a savepoint: either the job and its execution record are both
        written, or nothing is.

        Args:
            description: The job to enqueue.
            scheduled_at: Run time, overriding the description's. Defaults to now.

        Returns:
            The enqueued Job, or None if the job was discarded because its
            concurrency limit was reached and its policy is to discard.

        Raises:
            EnqueueError: If the job could not be persisted.
        """
        try:
            with create_span(
                SPAN_ENQUEUE_JOB,
                class_name=description.class_name,
                concurrency_key=description.concurrency_key,
            ):
                async with self._session.begin_nested():
                    job, status = await self._create_job(description, scheduled_at)
        except SQLAlchemyError as e:
            logger.error(
                "Failed to enqueue job",
                extra={"class_name": description.class_name, "error": str(e)},
            )
            raise EnqueueError(
                f"Failed to enqueue {description.class_name}: {e}"
            ) from e

        outcome = status.value if status is not None else "discarded"
        self._metrics.record_job_enqueued(
            description.queue_name or self._settings.default_queue_name,
            outcome,
        )
        return job if status is not None else None

    async def enqueue_all(
        self,
        descriptions: Iterable[JobDescription],
    ) -> list[Job | None]:
        """
        Enqueue several jobs in the order given.

        Each job gets its own savepoint and sees the semaphore slots taken by
        the jobs before it, so two jobs sharing a key with one free slot end up
        ready and blocked (or discarded) respectively.

        Args:
            descriptions: The jobs to enqueue.

        Returns:
            One entry per description: the Job, or None if it was discarded.

        Raises:
            EnqueueError: If a job could not be persisted. Jobs enqueued before
                it remain part of the caller's transaction.
        """
        jobs = [await self.enqueue(description) for description in descriptions]

        logger.info(
            "Enqueued jobs in bulk",
            extra={
                "job_count": len(jobs),
                "discarded": sum(1 for job in jobs if job is None),
            },
        )
        return jobs

    async def _create_job(
        self,
        description: JobDescription,
        scheduled_at: datetime | None,
    ) -> tuple[Job, ExecutionStatus | None]:
        now = self._clock()

        job = Job(
            class_name=description.class_name,
            queue_name=description.queue_name or self._settings.default_queue_name,
            arguments=description.arguments,
            priority=description.priority,
            scheduled_at=as_naive_utc(scheduled_at or description.scheduled_at or now),
            concurrency_key=description.concurrency_key,
            concurrency_limit=description.concurrency_limit,
            concurrency_duration=description.concurrency_duration_seconds,
            on_conflict=description.on_conflict,
            created_at=now,
            updated_at=now,
        )
        self._session.add(job)
        await self._session.flush()

        if job.scheduled_at > now:
            self._session.add(
                ScheduledExecution(
                    job_id=job.id,
                    queue_name=job.queue_name,
                    priority=job.priority,
                    scheduled_at=job.scheduled_at,
                    created_at=now,
                )
            )
            await self._session.flush()
            status = ExecutionStatus.SCHEDULED
        else:
            status = await self._dispatch(job, now)

        logger.info(
            "Enqueued job",
            extra={
                "job_id": job.id,
                "class_name": job.class_name,
                "queue_name": job.queue_name,
                "status": status.value if status else "discarded",
            },
        )
        return job, status

    async def _dispatch(self, job: Job, now: datetime) -> ExecutionStatus | None:
        """
        Make a due job ready, or block or discard it if its key is at its limit.

        Returns:
            The new state, or None if the job was discarded.
        """
        if not job.concurrency_limited:
            await self._insert_ready(job, now)
            return ExecutionStatus.READY

        period = self._concurrency_period(job)
        acquired = await self._semaphores.try_acquire(
            job.concurrency_key,
            job.concurrency_limit or DEFAULT_CONCURRENCY_LIMIT,
            period,
        )
        self._metrics.record_semaphore_acquire(acquired)

        if acquired:
            job.lease_expires_at = now + period
            await self._insert_ready(job, now)
            return ExecutionStatus.READY

        if job.on_conflict == ConflictPolicy.DISCARD:
            logger.info(
                "Discarded job due to concurrency limit",
                extra={"job_id": job.id, "concurrency_key": job.concurrency_key},
            )
            await self._session.delete(job)
            await self._session.flush()
            return None

        self._session.add(
            BlockedExecution(
                job_id=job.id,
                queue_name=job.queue_name,
                priority=job.priority,
                concurrency_key=job.concurrency_key,
                expires_at=now + period,
                created_at=now,
            )
        )
        await self._session.flush()
        return ExecutionStatus.BLOCKED

    async def _insert_ready(self, job: Job, now: datetime) -> None:
        self._session.add(
            ReadyExecution(
                job_id=job.id,
                queue_name=job.queue_name,
                priority=job.priority,
                created_at=now,
            )
        )
        job.updated_at = now
        await self._session.flush()

    def _concurrency_period(self, job: Job) -> timedelta:
        return job.concurrency_period(self._settings.default_concurrency_control_period)

    # ------------------------------------------------------------------
    # Dispatcher
    # ------------------------------------------------------------------

    async def dispatch_next_batch(self, batch_size: int) -> int:
        """
        Move due scheduled jobs to ready, or blocked if their key is at its limit.

        Picks the earliest due jobs first, then the most urgent. Rows are
        locked with SKIP LOCKED and removed with a conditional delete, so
        concurrent dispatchers never promote the same job twice.

        Args:
            batch_size: Maximum number of scheduled jobs to process.

        Returns:
            Number of jobs that became ready. Jobs that were blocked or
            discarded are processed but not counted.

        Raises:
            ValueError: If batch_size is less than 1.
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")

        now = self._clock()

        stmt = (
            select(ScheduledExecution.job_id)
            .where(ScheduledExecution.scheduled_at <= now)
            .order_by(
                ScheduledExecution.scheduled_at,
                ScheduledExecution.priority,
                ScheduledExecution.job_id,
            )
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
        job_ids = list((await self._session.execute(stmt)).scalars().all())
        if not job_ids:
            return 0

        deleted = await self._session.execute(
            delete(ScheduledExecution)
            .where(ScheduledExecution.job_id.in_(job_ids))
            .returning(ScheduledExecution.job_id)
        )
        owned = set(deleted.scalars().all())

        jobs = {
            job.id: job
            for job in (
                await self._session.execute(select(Job).where(Job.id.in_(list(owned))))
            ).scalars()
        }

        outcomes = {status: 0 for status in ExecutionStatus}
        discarded = 0
        for job_id in job_ids:
            job = jobs.get(job_id)
            if job is None:
                continue
            status = await self._dispatch(job, now)
            if status is None:
                discarded += 1
            else:
                outcomes[status] += 1

        promoted = outcomes[ExecutionStatus.READY]
        self._metrics.record_jobs_dispatched("ready", promoted)
        self._metrics.record_jobs_dispatched("blocked", outcomes[ExecutionStatus.BLOCKED])
        self._metrics.record_jobs_dispatched("discarded", discarded)

        logger.info(
            "Dispatched scheduled jobs",
            extra={
                "ready": promoted,
                "blocked": outcomes[ExecutionStatus.BLOCKED],
                "discarded": discarded,
            },
        )
        return promoted

    # ------------------------------------------------------------------
    # Concurrency release and blocked promotion
    # ------------------------------------------------------------------

    async def promote_blocked(self, concurrency_key: str) -> Job | None:
        """
        Move the oldest blocked job of a key to ready, if a slot is free.

        Args:
            concurrency_key: The concurrency key.

        Returns:
            The promoted Job, or None if nothing was blocked or no slot was free.
        """
        stmt = (
            select(BlockedExecution)
            .where(BlockedExecution.concurrency_key == concurrency_key)
            .order_by(BlockedExecution.job_id)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        blocked = (await self._session.execute(stmt)).scalar_one_or_none()
        if blocked is None:
            return None

        job = await self.get_job(blocked.job_id)
        if job is None:
            return None

        period = self._concurrency_period(job)
        acquired = await self._semaphores.try_acquire(
            concurrency_key,
            job.concurrency_limit or DEFAULT_CONCURRENCY_LIMIT,
            period,
        )
        self._metrics.record_semaphore_acquire(acquired)
        if not acquired:
            return None

        now = self._clock()
        await self._session.delete(blocked)
        job.lease_expires_at = now + period
        await self._insert_ready(job, now)

        self._metrics.record_job_unblocked()
        logger.info(
            "Promoted blocked job",
            extra={"job_id": job.id, "concurrency_key": concurrency_key},
        )
        return job

    async def _release_concurrency_lock(self, concurrency_key: str | None) -> Job | None:
        """Return a slot to the key and hand it to the oldest blocked job."""
        if concurrency_key is None:
            return None
        await self._semaphores.release(concurrency_key)
        return await self.promote_blocked(concurrency_key)

    async def unblock_expired(self, batch_size: int = 500) -> int:
        """
        Retry promotion for keys whose blocked jobs have waited past their expiry.

        Promotion still requires a free slot; keys whose semaphore is held by
        live leases stay blocked.

        Args:
            batch_size: Maximum number of concurrency keys to examine.

        Returns:
            Number of jobs promoted to ready.
        """
        now = self._clock()
        stmt = (
            select(BlockedExecution.concurrency_key)
            .where(BlockedExecution.expires_at < now)
            .distinct()
            .limit(batch_size)
        )
        keys = (await self._session.execute(stmt)).scalars().all()

        promoted = 0
        for key in keys:
            if await self.promote_blocked(key) is not None:
                promoted += 1

        if promoted:
            logger.info("Unblocked expired blocked jobs", extra={"job_count": promoted})
        return promoted

    async def release_expired_semaphores(self, batch_size: int = 500) -> int:
        """
        Reset semaphores with expired leases and promote their blocked jobs.

        Args:
            batch_size: Maximum number of semaphores to reset.

        Returns:
            Number of semaphores reset.
        """
        keys = await self._semaphores.release_expired(batch_size)
        self._metrics.record_leases_expired(len(keys))

        for key in keys:
            while await self.promote_blocked(key) is not None:
                pass

        return len(keys)

    # ------------------------------------------------------------------
    # Discard path
    # ------------------------------------------------------------------

    async def discard(self, job: Job) -> None:
        """
        Remove a job that is not being executed.

        Discarding a ready job holding a concurrency slot releases the slot
        and promotes the oldest blocked job of the same key in the same
        transaction.

        Args:
            job: The job to discard.

        Raises:
            UndiscardableError: If the job is claimed by a worker.
            JobNotFoundError: If the job has no live execution record.
        """
        status = await self.status(job.id)
        if status == ExecutionStatus.CLAIMED:
            raise UndiscardableError(f"Can't discard job {job.id}: it is being executed")
        if status is None or status == ExecutionStatus.FINISHED:
            raise JobNotFoundError(f"Job {job.id} has no execution to discard")

        model = EXECUTION_MODELS[status]
        deleted = await self._session.execute(
            delete(model).where(model.job_id == job.id).returning(model.job_id)
        )
        if deleted.scalar_one_or_none() is None:
            # Moved by another process between the lookup and the delete
            status = await self.status(job.id)
            if status == ExecutionStatus.CLAIMED:
                raise UndiscardableError(f"Can't discard job {job.id}: it is being executed")
            raise JobNotFoundError(f"Job {job.id} changed state while discarding")

        await self._delete_jobs([job.id], status)
        logger.info(
            "Discarded job",
            extra={"job_id": job.id, "status": status.value},
        )

    async def discard_all_from_jobs(
        self,
        status: ExecutionStatus,
        job_ids: Sequence[int],
    ) -> int:
        """
        Discard every job of the given set that is in one execution state.

        Ready jobs release their slot and promote one blocked job each, exactly
        as single discards do.

        Args:
            status: The execution state to discard from.
            job_ids: Candidate job IDs; jobs in other states are left alone.

        Returns:
            Number of jobs discarded.

        Raises:
            UndiscardableError: If asked to discard claimed jobs.
        """
        if status == ExecutionStatus.CLAIMED:
            raise UndiscardableError("Can't discard claimed jobs")
        if status not in DISCARDABLE_STATUSES:
            raise ValueError(f"Can't discard jobs in state: {status}")
        if not job_ids:
            return 0

        model = EXECUTION_MODELS[status]
        locked = await self._session.execute(
            select(model.job_id)
            .where(model.job_id.in_(list(job_ids)))
            .order_by(model.job_id)
            .with_for_update()
        )
        candidates = list(locked.scalars().all())
        if not candidates:
            return 0

        deleted = await self._session.execute(
            delete(model).where(model.job_id.in_(candidates)).returning(model.job_id)
        )
        discarded = sorted(deleted.scalars().all())

        await self._delete_jobs(discarded, status)
        logger.info(
            "Discarded jobs in bulk",
            extra={"status": status.value, "job_count": len(discarded)},
        )
        return len(discarded)

    async def _delete_jobs(self, job_ids: list[int], status: ExecutionStatus) -> None:
        """Delete discarded jobs, releasing slots held by ready ones."""
        if not job_ids:
            return

        keys: list[str] = []
        if status == ExecutionStatus.READY:
            rows = await self._session.execute(
                select(Job.concurrency_key)
                .where(Job.id.in_(job_ids), Job.concurrency_key.is_not(None))
                .order_by(Job.id)
            )
            keys = list(rows.scalars().all())

        await self._session.execute(
            delete(Job)
            .where(Job.id.in_(job_ids))
        )

        # One release and one promotion per discarded slot holder, as for a
        # single discard; waiters of bulk-discarded ready jobs become ready
        # here rather than waiting for a blocked-state discard.
        for key in keys:
            await self._release_concurrency_lock(key)

        self._metrics.record_jobs_discarded(status.value, len(job_ids))

    # ------------------------------------------------------------------
    # Worker interface
    # ------------------------------------------------------------------

    async def claim_next(
        self,
        queues: Sequence[str],
        limit: int,
        process_id: str,
    ) -> list[Job]:
        """
        Claim ready jobs for a worker using FOR UPDATE SKIP LOCKED.

        Jobs are taken by priority, then in enqueue order.

        Args:
            queues: Queue names to poll; "*" polls every queue.
            limit: Maximum number of jobs to claim.
            process_id: Identity of the claiming worker.

        Returns:
            The claimed jobs, in claim order.

        Raises:
            ValueError: If limit is less than 1.
        """
        if limit < 1:
            raise ValueError(f"limit must be at least 1, got {limit}")

        stmt = (
            select(ReadyExecution.job_id)
            .order_by(ReadyExecution.priority, ReadyExecution.job_id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        if ALL_QUEUES not in queues:
            stmt = stmt.where(ReadyExecution.queue_name.in_(list(queues)))

        job_ids = list((await self._session.execute(stmt)).scalars().all())
        if not job_ids:
            return []

        deleted = await self._session.execute(
            delete(ReadyExecution)
            .where(ReadyExecution.job_id.in_(job_ids))
            .returning(ReadyExecution.job_id)
        )
        owned = set(deleted.scalars().all())
        claimed_ids = [job_id for job_id in job_ids if job_id in owned]

        now = self._clock()
        self._session.add_all(
            ClaimedExecution(job_id=job_id, process_id=process_id, created_at=now)
            for job_id in claimed_ids
        )
        await self._session.flush()

        jobs = {
            job.id: job
            for job in (
                await self._session.execute(select(Job).where(Job.id.in_(claimed_ids)))
            ).scalars()
        }

        logger.info(
            f"Claimed {len(claimed_ids)} jobs",
            extra={"process_id": process_id, "job_count": len(claimed_ids)},
        )
        return [jobs[job_id] for job_id in claimed_ids if job_id in jobs]

    async def finish(self, job: Job) -> None:
        """
        Mark a claimed job as successfully executed.

        The job is deleted, or kept with `finished_at` set when finished jobs
        are preserved. Its concurrency slot goes to the next blocked job.

        Args:
            job: The claimed job.

        Raises:
            JobNotFoundError: If the job is not claimed.
        """
        await self._delete_claimed(job)
        now = self._clock()

        if self._settings.preserve_finished_jobs:
            await self._session.execute(
                update(Job)
                .where(Job.id == job.id)
                .values(finished_at=now, updated_at=now, lease_expires_at=None)
            )
        else:
            await self._session.execute(
                delete(Job)
                .where(Job.id == job.id)
            )

        await self._release_concurrency_lock(job.concurrency_key)
        logger.info("Job finished", extra={"job_id": job.id})

    async def fail(self, job: Job, error: str) -> None:
        """
        Record a failed execution of a claimed job.

        The job moves to the failed state for the caller's retry policy to act
        on, and its concurrency slot goes to the next blocked job.

        Args:
            job: The claimed job.
            error: Description of the failure.

        Raises:
            JobNotFoundError: If the job is not claimed.
        """
        await self._delete_claimed(job)
        now = self._clock()

        self._session.add(FailedExecution(job_id=job.id, error=error, created_at=now))
        await self._session.execute(
            update(Job)
            .where(Job.id == job.id)
            .values(updated_at=now, lease_expires_at=None)
        )
        await self._session.flush()

        await self._release_concurrency_lock(job.concurrency_key)
        logger.warning("Job failed", extra={"job_id": job.id, "error": error})

    async def retry(self, job: Job) -> ExecutionStatus | None:
        """
        Re-dispatch a failed job, checking its concurrency limit again.

        Args:
            job: The failed job.

        Returns:
            The job's new state, or None if it was discarded by its conflict policy.

        Raises:
            JobNotFoundError: If the job is not failed.
        """
        deleted = await self._session.execute(
            delete(FailedExecution)
            .where(FailedExecution.job_id == job.id)
            .returning(FailedExecution.job_id)
        )
        if deleted.scalar_one_or_none() is None:
            raise JobNotFoundError(f"Job {job.id} is not failed")

        current = await self.get_job(job.id)
        status = await self._dispatch(current, self._clock())
        logger.info(
            "Retried failed job",
            extra={"job_id": job.id, "status": status.value if status else "discarded"},
        )
        return status

    async def _delete_claimed(self, job: Job) -> None:
        deleted = await self._session.execute(
            delete(ClaimedExecution)
            .where(ClaimedExecution.job_id == job.id)
            .returning(ClaimedExecution.job_id)
        )
        if deleted.scalar_one_or_none() is None:
            raise JobNotFoundError(f"Job {job.id} is not claimed")

    # ------------------------------------------------------------------
    # Maintenance and diagnostics
    # ------------------------------------------------------------------

    async def clear_finished(self, older_than: timedelta, batch_size: int = 500) -> int:
        """
        Delete preserved finished jobs.

        Args:
            older_than: Only jobs finished at least this long ago are deleted.
            batch_size: Maximum number of jobs to delete.

        Returns:
            Number of jobs deleted.
        """
        cutoff = self._clock() - older_than
        ids = (
            select(Job.id)
            .where(Job.finished_at.is_not(None), Job.finished_at < cutoff)
            .order_by(Job.finished_at)
            .limit(batch_size)
            .scalar_subquery()
        )
        result = await self._session.execute(
            delete(Job)
            .where(Job.id.in_(ids))
        )
        return result.rowcount

    async def count_by_status(
        self,
        queue_name: str | None = None,
    ) -> dict[ExecutionStatus, int]:
        """
        Count jobs in each execution state.

        Args:
            queue_name: Optional queue filter.

        Returns:
            Dictionary of state -> count.
        """
        counts = {}
        for status, model in EXECUTION_MODELS.items():
            stmt = select(func.count()).select_from(model)
            if queue_name is not None:
                stmt = stmt.join(Job, Job.id == model.job_id).where(
                    Job.queue_name == queue_name
                )
            counts[status] = (await self._session.execute(stmt)).scalar() or 0
        return counts

    async def queue_stats(self) -> dict[str, dict[str, int]]:
        """
        Count jobs per queue and execution state.

        Returns:
            Dictionary of queue name -> state -> count.
        """
        stats: dict[str, dict[str, int]] = {}
        for status, model in EXECUTION_MODELS.items():
            stmt = (
                select(Job.queue_name, func.count())
                .select_from(model)
                .join(Job, Job.id == model.job_id)
                .group_by(Job.queue_name)
            )
            for queue_name, count in (await self._session.execute(stmt)).all():
                stats.setdefault(queue_name, {s.value: 0 for s in EXECUTION_MODELS})
                stats[queue_name][status.value] = count
        return stats
