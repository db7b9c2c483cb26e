"""
Type definitions for the job queue.
Contains input/output type definitions shared by producers, workers and processes.
"""

from jobqueue.types.job import (
    JobContext,
    JobDescription,
    JobResult,
    QueueCounts,
)

__all__ = [
    "JobDescription",
    "JobResult",
    "JobContext",
    "QueueCounts",
]
