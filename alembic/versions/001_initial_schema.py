"""Initial schema with jobs, execution and semaphore tables

Revision ID: 001
Revises:
Create Date: 2024-01-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _job_reference() -> sa.Column:
    return sa.Column(
        "job_id",
        sa.BigInteger,
        sa.ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )


def upgrade() -> None:
    op.execute("""
        DO $$ BEGIN
            CREATE TYPE conflict_policy AS ENUM ('block', 'discard');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    op.create_table(
        "jobs",
        sa.Column("id", sa.BigInteger, sa.Identity(), nullable=False),
        sa.Column("class_name", sa.String(255), nullable=False),
        sa.Column("queue_name", sa.String(255), nullable=False),
        sa.Column("arguments", postgresql.JSONB, nullable=True),
        sa.Column("priority", sa.Integer, nullable=False, server_default="50"),
        sa.Column("scheduled_at", sa.DateTime, nullable=False),
        sa.Column("concurrency_key", sa.String(255), nullable=True),
        sa.Column("concurrency_limit", sa.Integer, nullable=True),
        sa.Column("concurrency_duration", sa.Integer, nullable=True),
        sa.Column(
            "on_conflict",
            postgresql.ENUM("block", "discard", name="conflict_policy", create_type=False),
            nullable=False,
            server_default="block",
        ),
        sa.Column("lease_expires_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("finished_at", sa.DateTime, nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "concurrency_limit IS NULL OR concurrency_limit > 0",
            name="ck_jobs_concurrency_limit_positive",
        ),
    )
    op.create_index("ix_jobs_queue_name", "jobs", ["queue_name"])
    op.create_index("ix_jobs_class_name", "jobs", ["class_name"])
    op.create_index("ix_jobs_concurrency_key", "jobs", ["concurrency_key"])
    op.create_index("ix_jobs_finished_at", "jobs", ["finished_at"])

    op.create_table(
        "ready_executions",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        _job_reference(),
        sa.Column("queue_name", sa.String(255), nullable=False),
        sa.Column("priority", sa.Integer, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_ready_executions_poll_all", "ready_executions", ["priority", "job_id"])
    op.create_index(
        "ix_ready_executions_poll_by_queue",
        "ready_executions",
        ["queue_name", "priority", "job_id"],
    )

    op.create_table(
        "scheduled_executions",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        _job_reference(),
        sa.Column("queue_name", sa.String(255), nullable=False),
        sa.Column("priority", sa.Integer, nullable=False),
        sa.Column("scheduled_at", sa.DateTime, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index(
        "ix_scheduled_executions_dispatch",
        "scheduled_executions",
        ["scheduled_at", "priority", "job_id"],
    )

    op.create_table(
        "blocked_executions",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        _job_reference(),
        sa.Column("queue_name", sa.String(255), nullable=False),
        sa.Column("priority", sa.Integer, nullable=False),
        sa.Column("concurrency_key", sa.String(255), nullable=False),
        sa.Column("expires_at", sa.DateTime, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index(
        "ix_blocked_executions_release",
        "blocked_executions",
        ["concurrency_key", "job_id"],
    )
    op.create_index(
        "ix_blocked_executions_maintenance",
        "blocked_executions",
        ["expires_at", "concurrency_key"],
    )

    op.create_table(
        "claimed_executions",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        _job_reference(),
        sa.Column("process_id", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_claimed_executions_process_id", "claimed_executions", ["process_id"])

    op.create_table(
        "failed_executions",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        _job_reference(),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )

    op.create_table(
        "semaphores",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column("key", sa.String(255), nullable=False, unique=True),
        sa.Column("value", sa.Integer, nullable=False),
        sa.Column("limit", sa.Integer, nullable=False),
        sa.Column("expires_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.CheckConstraint(
            'value >= 0 AND value <= "limit"',
            name="ck_semaphores_value_in_range",
        ),
    )
    op.create_index("ix_semaphores_expires_at", "semaphores", ["expires_at"])


def downgrade() -> None:
    op.drop_index("ix_semaphores_expires_at")
    op.drop_table("semaphores")
    op.drop_table("failed_executions")
    op.drop_index("ix_claimed_executions_process_id")
    op.drop_table("claimed_executions")
    op.drop_index("ix_blocked_executions_maintenance")
    op.drop_index("ix_blocked_executions_release")
    op.drop_table("blocked_executions")
    op.drop_index("ix_scheduled_executions_dispatch")
    op.drop_table("scheduled_executions")
    op.drop_index("ix_ready_executions_poll_by_queue")
    op.drop_index("ix_ready_executions_poll_all")
    op.drop_table("ready_executions")
    op.drop_index("ix_jobs_finished_at")
    op.drop_index("ix_jobs_concurrency_key")
    op.drop_index("ix_jobs_class_name")
    op.drop_index("ix_jobs_queue_name")
    op.drop_table("jobs")

    op.execute("DROP TYPE IF EXISTS conflict_policy")
