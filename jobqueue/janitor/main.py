"""
Janitor for concurrency maintenance.

Concurrency slots are normally returned when a job finishes, fails or is
discarded. When a holder crashes its slot is only recovered once the lease
expires; the janitor runs periodically to reset expired semaphores, retry
blocked jobs that have waited past their expiry, and delete preserved finished
jobs that are old enough.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobqueue.clock import Clock
from jobqueue.config import get_settings
from jobqueue.constants import SPAN_CONCURRENCY_MAINTENANCE
from jobqueue.db import close_db, get_engine, get_session_context, init_db
from jobqueue.db.repository import JobRepository
from jobqueue.observability.logging import setup_logging
from jobqueue.observability.metrics import get_metrics, setup_metrics
from jobqueue.observability.tracing import create_span, instrument_sqlalchemy, setup_tracing

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceReport:
    """What one janitor run did."""

    semaphores_released: int = 0
    jobs_unblocked: int = 0
    finished_jobs_cleared: int = 0


class Janitor:
    """
    Concurrency maintenance process.

    Runs periodically to:
    1. Reset semaphores whose lease expired and promote their blocked jobs
    2. Retry promotion for blocked jobs past their expiry
    3. Clear preserved finished jobs older than the retention period
    4. Refresh the queue depth gauges
    """

    def __init__(
        self,
        interval_seconds: int | None = None,
        batch_size: int | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Clock | None = None,
    ):
        """
        Initialize the janitor.

        Args:
            interval_seconds: Seconds between janitor runs.
            batch_size: Maximum rows handled per step of a run.
            session_factory: Session factory. Defaults to the one from init_db().
            clock: Source of the current time for repository operations.
        """
        settings = get_settings()
        self.interval = interval_seconds or settings.janitor_interval_seconds
        self.batch_size = batch_size or settings.janitor_batch_size
        self.clear_finished_after = timedelta(seconds=settings.clear_finished_jobs_after_seconds)
        self.preserve_finished_jobs = settings.preserve_finished_jobs
        self._session_factory = session_factory
        self._clock = clock
        self._running = False
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Start the janitor loop."""
        logger.info(f"Janitor starting with interval {self.interval}s")
        self._running = True

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in janitor loop: {e}")

            await asyncio.sleep(self.interval)

        logger.info("Janitor stopped")

    async def stop(self) -> None:
        """Stop the janitor."""
        logger.info("Janitor stopping")
        self._running = False

    async def run_once(self) -> MaintenanceReport:
        """
        Run every maintenance step once, each in its own transaction.

        Returns:
            MaintenanceReport: Counts of what was done.
        """
        report = MaintenanceReport()

        with create_span(SPAN_CONCURRENCY_MAINTENANCE) as span:
            async with get_session_context(self._session_factory) as session:
                repo = JobRepository(session, clock=self._clock)
                report.semaphores_released = await repo.release_expired_semaphores(
                    self.batch_size
                )

            async with get_session_context(self._session_factory) as session:
                repo = JobRepository(session, clock=self._clock)
                report.jobs_unblocked = await repo.unblock_expired(self.batch_size)

            if self.preserve_finished_jobs:
                async with get_session_context(self._session_factory) as session:
                    repo = JobRepository(session, clock=self._clock)
                    report.finished_jobs_cleared = await repo.clear_finished(
                        self.clear_finished_after, self.batch_size
                    )

            async with get_session_context(self._session_factory) as session:
                stats = await JobRepository(session, clock=self._clock).queue_stats()
            self._metrics.update_queue_depth(stats)

            span.set_attribute("semaphores_released", report.semaphores_released)
            span.set_attribute("jobs_unblocked", report.jobs_unblocked)

        if report.semaphores_released or report.jobs_unblocked or report.finished_jobs_cleared:
            logger.info(
                "Concurrency maintenance done",
                extra={
                    "semaphores_released": report.semaphores_released,
                    "jobs_unblocked": report.jobs_unblocked,
                    "finished_jobs_cleared": report.finished_jobs_cleared,
                },
            )
        return report


async def run_async() -> None:
    """Run the janitor asynchronously."""
    settings = get_settings()
    setup_logging(process_name="janitor")
    setup_tracing()
    setup_metrics(settings.prometheus_port)
    await init_db()
    instrument_sqlalchemy(get_engine())

    janitor = Janitor()

    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(janitor.stop())
        )

    try:
        await janitor.start()
    finally:
        await close_db()


def run() -> None:
    """Run the janitor."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
