"""
Job-related type definitions for producers, workers and diagnostics.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field, PositiveInt, field_validator, model_validator

from jobqueue.clock import as_naive_utc
from jobqueue.constants import (
    ConflictPolicy,
    DEFAULT_CONCURRENCY_LIMIT,
    DEFAULT_PRIORITY,
    ExecutionStatus,
)


class JobDescription(BaseModel):
    """
    Everything the queue needs to persist a job.

    Built by producers (usually through `jobqueue.registry.describe`) and
    consumed by `JobRepository.enqueue`.
    """

    class_name: str = Field(min_length=1, max_length=255)
    queue_name: str | None = Field(default=None, max_length=255)
    arguments: Any = None
    priority: int = int(DEFAULT_PRIORITY)
    scheduled_at: datetime | None = None

    concurrency_key: str | None = Field(default=None, max_length=255)
    concurrency_limit: PositiveInt | None = None
    concurrency_duration: timedelta | None = None
    on_conflict: ConflictPolicy = ConflictPolicy.BLOCK

    @field_validator("scheduled_at")
    @classmethod
    def _as_naive_utc(cls, value: datetime | None) -> datetime | None:
        return as_naive_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _default_concurrency_limit(self) -> "JobDescription":
        if self.concurrency_key is not None and self.concurrency_limit is None:
            self.concurrency_limit = DEFAULT_CONCURRENCY_LIMIT
        if self.concurrency_duration is not None:
            # Stored as whole seconds on the job row
            if self.concurrency_duration < timedelta(seconds=1):
                raise ValueError("concurrency_duration must be at least one second")
            if self.concurrency_duration % timedelta(seconds=1):
                raise ValueError("concurrency_duration must be a whole number of seconds")
        return self

    @property
    def concurrency_duration_seconds(self) -> int | None:
        """Duration as stored on the job row."""
        if self.concurrency_duration is None:
            return None
        return int(self.concurrency_duration.total_seconds())


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.
    """

    success: bool
    output: Any = None
    error: str | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and utilities for the handler.
    """

    job_id: int
    class_name: str
    queue_name: str
    arguments: Any
    process_id: str
    concurrency_key: str | None = None
    claimed_at: datetime | None = None


class QueueCounts(BaseModel):
    """Number of jobs in each execution state, for one queue or all of them."""

    ready: int = 0
    scheduled: int = 0
    blocked: int = 0
    claimed: int = 0
    failed: int = 0

    @classmethod
    def from_mapping(cls, counts: dict[ExecutionStatus, int]) -> "QueueCounts":
        return cls(**{status.value: count for status, count in counts.items()})
