"""
Worker process for executing jobs.

The worker claims ready jobs from its queues, runs the handler registered for
each job's class, and reports the job as finished or failed. Reporting either
outcome releases the job's concurrency slot to the next blocked job.
"""

import asyncio
import logging
import os
import signal
import time

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobqueue.clock import Clock
from jobqueue.config import get_settings
from jobqueue.constants import SPAN_EXECUTE_JOB
from jobqueue.db import close_db, get_engine, get_session_context, init_db
from jobqueue.db.models import Job
from jobqueue.db.repository import JobRepository
from jobqueue.observability.logging import bind_context, setup_logging
from jobqueue.observability.metrics import get_metrics, setup_metrics
from jobqueue.observability.tracing import create_span, instrument_sqlalchemy, setup_tracing
from jobqueue.registry import execute_job
from jobqueue.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)


class Worker:
    """
    Job worker that polls for and executes jobs.

    Features:
    - Atomic claiming using FOR UPDATE SKIP LOCKED
    - Handlers resolved through the job class registry
    - Finish/fail reporting that hands concurrency slots to blocked jobs
    - Graceful shutdown on SIGTERM/SIGINT
    """

    def __init__(
        self,
        worker_id: str | None = None,
        queues: list[str] | None = None,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Clock | None = None,
    ):
        """
        Initialize the worker.

        Args:
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            queues: Queue names to poll; "*" polls all of them.
            batch_size: Number of jobs to claim per poll.
            poll_interval: Seconds between polls when queue is empty.
            session_factory: Session factory. Defaults to the one from init_db().
            clock: Source of the current time for repository operations.
        """
        settings = get_settings()

        self.worker_id = worker_id or settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.queues = queues or settings.worker_queue_names
        self.batch_size = batch_size or settings.worker_batch_size
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds

        self._session_factory = session_factory
        self._clock = clock
        self._running = False
        self._current_jobs: dict[int, asyncio.Task] = {}
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Start the worker."""
        logger.info(
            "Worker starting",
            extra={
                "worker_id": self.worker_id,
                "queues": self.queues,
                "batch_size": self.batch_size,
            }
        )

        self._running = True

        while self._running:
            try:
                jobs_processed = await self.run_once()

                if jobs_processed == 0:
                    await asyncio.sleep(self.poll_interval)

            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id}
                )
                await asyncio.sleep(self.poll_interval)

        if self._current_jobs:
            logger.info(f"Waiting for {len(self._current_jobs)} jobs to complete")
            await asyncio.gather(*self._current_jobs.values(), return_exceptions=True)

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False

    async def run_once(self) -> int:
        """
        Claim one batch of jobs and execute them.

        Returns:
            Number of jobs processed.
        """
        async with get_session_context(self._session_factory) as session:
            repo = JobRepository(session, clock=self._clock)
            jobs = await repo.claim_next(
                queues=self.queues,
                limit=self.batch_size,
                process_id=self.worker_id,
            )

        if not jobs:
            return 0

        tasks = []
        for job in jobs:
            task = asyncio.create_task(self._execute_job(job))
            self._current_jobs[job.id] = task
            tasks.append(task)

        await asyncio.gather(*tasks, return_exceptions=True)

        return len(jobs)

    async def _execute_job(self, job: Job) -> None:
        """
        Execute a single claimed job and report its outcome.

        Args:
            job: The claimed job.
        """
        start_time = time.monotonic()
        bind_context(job_id=job.id, class_name=job.class_name)

        context = JobContext(
            job_id=job.id,
            class_name=job.class_name,
            queue_name=job.queue_name,
            arguments=job.arguments,
            process_id=self.worker_id,
            concurrency_key=job.concurrency_key,
        )

        try:
            logger.info(
                "Executing job",
                extra={
                    "job_id": job.id,
                    "class_name": job.class_name,
                    "queue_name": job.queue_name,
                }
            )

            with create_span(
                SPAN_EXECUTE_JOB,
                job_id=job.id,
                class_name=job.class_name,
                queue_name=job.queue_name,
                concurrency_key=job.concurrency_key,
            ) as span:
                result = await execute_job(context)
                span.set_attribute("success", result.success)

            await self._report(job, result, time.monotonic() - start_time)

        except Exception as e:
            logger.exception(
                "Exception executing job",
                extra={"job_id": job.id, "error": str(e)}
            )

            try:
                async with get_session_context(self._session_factory) as session:
                    repo = JobRepository(session, clock=self._clock)
                    await repo.fail(job, f"Worker exception: {e}")
            except Exception:
                logger.exception("Failed to mark job as failed", extra={"job_id": job.id})

        finally:
            self._current_jobs.pop(job.id, None)

    async def _report(self, job: Job, result: JobResult, duration: float) -> None:
        """Finish or fail the job according to the handler's result."""
        async with get_session_context(self._session_factory) as session:
            repo = JobRepository(session, clock=self._clock)

            if result.success:
                await repo.finish(job)
                status = "finished"
                logger.info(
                    "Job completed successfully",
                    extra={"job_id": job.id, "duration": f"{duration:.2f}s"}
                )
            else:
                await repo.fail(job, result.error or "Unknown error")
                status = "failed"

        self._metrics.record_job_completed(
            queue_name=job.queue_name,
            status=status,
            duration_seconds=duration,
        )


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging(process_name="worker")
    setup_tracing()
    setup_metrics(settings.prometheus_port)
    await init_db()
    instrument_sqlalchemy(get_engine())

    worker = Worker()

    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        await worker.start()
    finally:
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
