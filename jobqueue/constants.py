"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import IntEnum, StrEnum


class ExecutionStatus(StrEnum):
    """
    Where a job currently sits in the pipeline.

    State transitions:
    - (enqueue) -> READY | SCHEDULED | BLOCKED
    - SCHEDULED -> READY | BLOCKED (dispatcher)
    - BLOCKED -> READY (slot released or wait expired)
    - READY -> CLAIMED (worker claim)
    - CLAIMED -> FINISHED | FAILED
    - FAILED -> READY | BLOCKED (retry)
    """

    READY = "ready"
    SCHEDULED = "scheduled"
    BLOCKED = "blocked"
    CLAIMED = "claimed"
    FAILED = "failed"
    FINISHED = "finished"


class ConflictPolicy(StrEnum):
    """What happens to a job whose concurrency key has no free slot."""

    BLOCK = "block"
    DISCARD = "discard"


class JobPriority(IntEnum):
    """Named priority levels. Lower values are processed first."""

    CRITICAL = 0
    HIGH = 25
    NORMAL = 50
    LOW = 75


# Statuses a job can be discarded from
DISCARDABLE_STATUSES = (
    ExecutionStatus.READY,
    ExecutionStatus.SCHEDULED,
    ExecutionStatus.BLOCKED,
    ExecutionStatus.FAILED,
)

# Default values
DEFAULT_PRIORITY = JobPriority.NORMAL
DEFAULT_CONCURRENCY_LIMIT = 1
ALL_QUEUES = "*"

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_DISPATCHED = "jobs_dispatched_total"
METRIC_JOBS_DISCARDED = "jobs_discarded_total"
METRIC_JOBS_UNBLOCKED = "jobs_unblocked_total"
METRIC_JOBS_COMPLETED = "jobs_completed_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_SEMAPHORE_ACQUIRE = "semaphore_acquire_total"
METRIC_LEASE_EXPIRED = "semaphore_lease_expired_total"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_DISPATCH_BATCH = "dispatch_batch"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_CONCURRENCY_MAINTENANCE = "concurrency_maintenance"
