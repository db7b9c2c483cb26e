"""
SQLAlchemy database models.
Defines the jobs table, the per-state execution tables and the semaphores table.
"""

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobqueue.constants import ConflictPolicy, DEFAULT_PRIORITY, ExecutionStatus

# BIGINT keys do not auto-increment on SQLite; INTEGER PRIMARY KEY does.
Identifier = BigInteger().with_variant(Integer, "sqlite")
Payload = JSON().with_variant(JSONB, "postgresql")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing a unit of work in the queue.

    The job row holds everything needed to run the job and to re-evaluate its
    concurrency controls. Which queue partition it sits in is given by the
    execution table that references it; there is at most one such row.
    """

    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)

    class_name: Mapped[str] = mapped_column(String(255), nullable=False)
    queue_name: Mapped[str] = mapped_column(String(255), nullable=False)
    arguments: Mapped[Any] = mapped_column(Payload, nullable=True)
    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=int(DEFAULT_PRIORITY),
    )
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # Concurrency controls
    concurrency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    concurrency_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    concurrency_duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    on_conflict: Mapped[ConflictPolicy] = mapped_column(
        Enum(
            ConflictPolicy,
            name="conflict_policy",
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=ConflictPolicy.BLOCK,
    )
    # Expiry of the concurrency slot held by this job, if any
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_jobs_queue_name", "queue_name"),
        Index("ix_jobs_class_name", "class_name"),
        Index("ix_jobs_concurrency_key", "concurrency_key"),
        Index("ix_jobs_finished_at", "finished_at"),
        CheckConstraint(
            "concurrency_limit IS NULL OR concurrency_limit > 0",
            name="ck_jobs_concurrency_limit_positive",
        ),
    )

    @property
    def concurrency_limited(self) -> bool:
        """Whether the job competes for a concurrency slot."""
        return self.concurrency_key is not None

    def concurrency_period(self, default: timedelta) -> timedelta:
        """Lease (and blocked wait) duration for this job."""
        if self.concurrency_duration is None:
            return default
        return timedelta(seconds=self.concurrency_duration)

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, class_name={self.class_name!r}, "
            f"queue={self.queue_name!r}, key={self.concurrency_key!r})"
        )


class ReadyExecution(Base):
    """Jobs waiting to be claimed by a worker, polled by (priority, job_id)."""

    __tablename__ = "ready_executions"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        Identifier,
        ForeignKey("jobs.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    queue_name: Mapped[str] = mapped_column(String(255), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_ready_executions_poll_all", "priority", "job_id"),
        Index("ix_ready_executions_poll_by_queue", "queue_name", "priority", "job_id"),
    )

    def __repr__(self) -> str:
        return f"ReadyExecution(job_id={self.job_id}, queue={self.queue_name!r})"


class ScheduledExecution(Base):
    """Jobs due in the future, promoted by the dispatcher."""

    __tablename__ = "scheduled_executions"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        Identifier,
        ForeignKey("jobs.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    queue_name: Mapped[str] = mapped_column(String(255), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index(
            "ix_scheduled_executions_dispatch",
            "scheduled_at",
            "priority",
            "job_id",
        ),
    )

    def __repr__(self) -> str:
        return f"ScheduledExecution(job_id={self.job_id}, scheduled_at={self.scheduled_at})"


class BlockedExecution(Base):
    """Jobs waiting for a free slot on their concurrency key."""

    __tablename__ = "blocked_executions"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        Identifier,
        ForeignKey("jobs.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    queue_name: Mapped[str] = mapped_column(String(255), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    concurrency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_blocked_executions_release", "concurrency_key", "job_id"),
        Index("ix_blocked_executions_maintenance", "expires_at", "concurrency_key"),
    )

    def __repr__(self) -> str:
        return f"BlockedExecution(job_id={self.job_id}, key={self.concurrency_key!r})"


class ClaimedExecution(Base):
    """Jobs currently owned by a worker process."""

    __tablename__ = "claimed_executions"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        Identifier,
        ForeignKey("jobs.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    process_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (Index("ix_claimed_executions_process_id", "process_id"),)

    def __repr__(self) -> str:
        return f"ClaimedExecution(job_id={self.job_id}, process_id={self.process_id!r})"


class FailedExecution(Base):
    """Jobs whose execution failed, handed to the caller's retry policy."""

    __tablename__ = "failed_executions"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        Identifier,
        ForeignKey("jobs.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return f"FailedExecution(job_id={self.job_id})"


class Semaphore(Base):
    """
    Concurrency semaphore for one concurrency key.

    `value` is the number of free slots and never leaves [0, limit].
    `expires_at` bounds how long the current holders may keep their slots
    before the semaphore is treated as abandoned.
    """

    __tablename__ = "semaphores"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False)
    limit: Mapped[int] = mapped_column(Integer, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_semaphores_expires_at", "expires_at"),
        CheckConstraint(
            'value >= 0 AND value <= "limit"',
            name="ck_semaphores_value_in_range",
        ),
    )

    def __repr__(self) -> str:
        return f"Semaphore(key={self.key!r}, value={self.value}/{self.limit})"


EXECUTION_MODELS: dict[ExecutionStatus, type[Base]] = {
    ExecutionStatus.READY: ReadyExecution,
    ExecutionStatus.SCHEDULED: ScheduledExecution,
    ExecutionStatus.BLOCKED: BlockedExecution,
    ExecutionStatus.CLAIMED: ClaimedExecution,
    ExecutionStatus.FAILED: FailedExecution,
}
