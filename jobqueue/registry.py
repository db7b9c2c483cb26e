"""
Job class registry.

Maps a job's `class_name` to the handler that executes it and to the
concurrency controls applied when it is enqueued. Producers use `describe` to
turn a registered class plus arguments into a `JobDescription`; workers use
`execute_job` to run a claimed job.

Handlers may be executed more than once for the same job if a worker crashes
after the job ran, so they should be idempotent.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from jobqueue.clock import utc_now
from jobqueue.constants import ConflictPolicy, DEFAULT_CONCURRENCY_LIMIT, DEFAULT_PRIORITY
from jobqueue.types.job import JobContext, JobDescription, JobResult

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[JobContext], Awaitable[JobResult]]


@dataclass(frozen=True)
class ConcurrencyControls:
    """
    Concurrency limit shared by jobs that map to the same key.

    Attributes:
        key: Called with the job arguments; its result identifies the
            resource the job needs exclusive (or limited) access to.
        to: Number of jobs with the same key that may run at once.
        group: Prefix shared by job classes that compete for the same slots.
            Defaults to the job's class name.
        duration: Lease duration of an acquired slot, and how long a blocked
            job waits before maintenance retries it. Defaults to the
            configured concurrency control period.
        on_conflict: What to do with a job when no slot is free.
    """

    key: Callable[[Any], Any]
    to: int = DEFAULT_CONCURRENCY_LIMIT
    group: str | None = None
    duration: timedelta | None = None
    on_conflict: ConflictPolicy = ConflictPolicy.BLOCK

    def concurrency_key(self, class_name: str, arguments: Any) -> str:
        return f"{self.group or class_name}/{self.key(arguments)}"


@dataclass(frozen=True)
class JobClass:
    """A registered job class."""

    name: str
    handler: JobHandler
    queue_name: str | None = None
    priority: int = int(DEFAULT_PRIORITY)
    concurrency: ConcurrencyControls | None = None


# Handler registry
_job_classes: dict[str, JobClass] = {}


def register_handler(
    class_name: str,
    *,
    queue_name: str | None = None,
    priority: int = int(DEFAULT_PRIORITY),
    limits_concurrency: ConcurrencyControls | None = None,
) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator to register a job handler.

    Args:
        class_name: The job class this handler executes.
        queue_name: Default queue for jobs of this class.
        priority: Default priority for jobs of this class.
        limits_concurrency: Optional concurrency controls.

    Returns:
        Decorator function.

    Example:
        @register_handler(
            "sync_account",
            limits_concurrency=ConcurrencyControls(key=lambda args: args["account_id"]),
        )
        async def handle_sync_account(context: JobContext) -> JobResult:
            ...
    """
    def decorator(handler: JobHandler) -> JobHandler:
        _job_classes[class_name] = JobClass(
            name=class_name,
            handler=handler,
            queue_name=queue_name,
            priority=priority,
            concurrency=limits_concurrency,
        )
        logger.info(f"Registered handler for job class: {class_name}")
        return handler
    return decorator


def unregister_handler(class_name: str) -> None:
    """Remove a job class from the registry."""
    _job_classes.pop(class_name, None)


def get_job_class(class_name: str) -> JobClass | None:
    """
    Get a registered job class.

    Args:
        class_name: The job class name.

    Returns:
        The JobClass or None if not registered.
    """
    return _job_classes.get(class_name)


def get_handler(class_name: str) -> JobHandler | None:
    """
    Get the handler for a job class.

    Args:
        class_name: The job class name.

    Returns:
        The handler function or None if not found.
    """
    job_class = _job_classes.get(class_name)
    return job_class.handler if job_class else None


def list_handlers() -> list[str]:
    """List all registered job classes."""
    return list(_job_classes.keys())


def describe(
    class_name: str,
    arguments: Any = None,
    *,
    queue_name: str | None = None,
    priority: int | None = None,
    scheduled_at: datetime | None = None,
    wait: timedelta | None = None,
) -> JobDescription:
    """
    Build the description of a job of a registered class.

    Args:
        class_name: The registered job class.
        arguments: JSON-serializable job arguments.
        queue_name: Overrides the class's queue.
        priority: Overrides the class's priority.
        scheduled_at: When the job should run.
        wait: Run this long from now; ignored if scheduled_at is given.

    Returns:
        JobDescription: Ready to pass to `JobRepository.enqueue`.

    Raises:
        KeyError: If the class is not registered.
    """
    job_class = _job_classes.get(class_name)
    if job_class is None:
        raise KeyError(f"No handler registered for job class: {class_name}")

    if scheduled_at is None and wait is not None:
        scheduled_at = utc_now() + wait

    fields: dict[str, Any] = {
        "class_name": class_name,
        "queue_name": queue_name or job_class.queue_name,
        "arguments": arguments,
        "priority": job_class.priority if priority is None else priority,
        "scheduled_at": scheduled_at,
    }

    controls = job_class.concurrency
    if controls is not None:
        fields.update(
            concurrency_key=controls.concurrency_key(class_name, arguments),
            concurrency_limit=controls.to,
            concurrency_duration=controls.duration,
            on_conflict=controls.on_conflict,
        )

    return JobDescription(**fields)


async def execute_job(context: JobContext) -> JobResult:
    """
    Execute a job using the appropriate handler.

    Args:
        context: The job context.

    Returns:
        JobResult from the handler.
    """
    handler = get_handler(context.class_name)

    if handler is None:
        logger.error(
            f"No handler for job class: {context.class_name}",
            extra={"job_id": context.job_id}
        )
        return JobResult(
            success=False,
            error=f"No handler registered for job class: {context.class_name}",
        )

    try:
        return await handler(context)
    except Exception as e:
        logger.exception(
            "Handler raised exception",
            extra={"job_id": context.job_id, "error": str(e)}
        )
        return JobResult(
            success=False,
            error=f"{type(e).__name__}: {e}",
        )
