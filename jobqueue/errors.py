"""
Exceptions raised by queue operations.
"""


class JobQueueError(Exception):
    """Base class for all job queue errors."""


class EnqueueError(JobQueueError):
    """
    A job could not be persisted.

    The enqueue transaction was rolled back: no job identity was assigned and
    the caller may retry.
    """


class UndiscardableError(JobQueueError):
    """Attempted to discard a job that a worker has claimed."""


class JobNotFoundError(JobQueueError):
    """The job has no live execution record for the requested operation."""
