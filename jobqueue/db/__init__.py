"""
Database module.
Contains database connection, models, and repository implementations.
"""

from jobqueue.db.connection import (
    close_db,
    create_schema,
    get_engine,
    get_session_context,
    init_db,
)
from jobqueue.db.models import (
    Base,
    BlockedExecution,
    ClaimedExecution,
    FailedExecution,
    Job,
    ReadyExecution,
    ScheduledExecution,
    Semaphore,
)

__all__ = [
    "get_session_context",
    "get_engine",
    "init_db",
    "create_schema",
    "close_db",
    "Base",
    "Job",
    "ReadyExecution",
    "ScheduledExecution",
    "BlockedExecution",
    "ClaimedExecution",
    "FailedExecution",
    "Semaphore",
]
