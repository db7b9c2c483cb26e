"""
Worker module.
Contains the worker process that claims and executes ready jobs.
"""

from jobqueue.worker.main import Worker, run

__all__ = ["Worker", "run"]
