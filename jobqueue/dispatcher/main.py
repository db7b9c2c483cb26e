"""
Dispatcher for scheduled jobs.

The dispatcher periodically moves scheduled jobs whose time has come into the
ready state, or into the blocked state when their concurrency key is at its
limit. Several dispatchers can run against the same database; each scheduled
job is promoted by exactly one of them.
"""

import asyncio
import logging
import signal

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobqueue.clock import Clock
from jobqueue.config import get_settings
from jobqueue.constants import SPAN_DISPATCH_BATCH
from jobqueue.db import close_db, get_engine, get_session_context, init_db
from jobqueue.db.repository import JobRepository
from jobqueue.observability.logging import setup_logging
from jobqueue.observability.metrics import setup_metrics
from jobqueue.observability.tracing import create_span, instrument_sqlalchemy, setup_tracing

logger = logging.getLogger(__name__)


class Dispatcher:
    """
    Scheduled job dispatcher.

    Runs batches back to back while there is a backlog and sleeps for the
    polling interval once a batch comes back short.
    """

    def __init__(
        self,
        batch_size: int | None = None,
        polling_interval: float | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Clock | None = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            batch_size: Maximum number of scheduled jobs per batch.
            polling_interval: Seconds to sleep when there is no backlog.
            session_factory: Session factory. Defaults to the one from init_db().
            clock: Source of the current time for repository operations.
        """
        settings = get_settings()
        self.batch_size = batch_size or settings.dispatcher_batch_size
        self.polling_interval = polling_interval or settings.dispatcher_polling_interval_seconds
        self._session_factory = session_factory
        self._clock = clock
        self._running = False

    async def start(self) -> None:
        """Start the dispatcher loop."""
        logger.info(
            f"Dispatcher starting with batch size {self.batch_size}",
            extra={"polling_interval": self.polling_interval},
        )
        self._running = True

        while self._running:
            try:
                processed = await self.run_once()
                if processed < self.batch_size:
                    await asyncio.sleep(self.polling_interval)

            except Exception as e:
                logger.exception(f"Error in dispatcher loop: {e}")
                await asyncio.sleep(self.polling_interval)

        logger.info("Dispatcher stopped")

    async def stop(self) -> None:
        """Stop the dispatcher."""
        logger.info("Dispatcher stopping")
        self._running = False

    async def run_once(self) -> int:
        """
        Dispatch one batch of due scheduled jobs.

        Returns:
            Number of jobs that became ready.
        """
        with create_span(SPAN_DISPATCH_BATCH, batch_size=self.batch_size) as span:
            async with get_session_context(self._session_factory) as session:
                repo = JobRepository(session, clock=self._clock)
                ready = await repo.dispatch_next_batch(self.batch_size)

            span.set_attribute("ready", ready)

        if ready:
            logger.debug(f"Dispatched {ready} scheduled jobs")
        return ready


async def run_async() -> None:
    """Run the dispatcher asynchronously."""
    settings = get_settings()
    setup_logging(process_name="dispatcher")
    setup_tracing()
    setup_metrics(settings.prometheus_port)
    await init_db()
    instrument_sqlalchemy(get_engine())

    dispatcher = Dispatcher()

    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(dispatcher.stop())
        )

    try:
        await dispatcher.start()
    finally:
        await close_db()


def run() -> None:
    """Run the dispatcher."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
