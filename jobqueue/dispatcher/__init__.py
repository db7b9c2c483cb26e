"""
Dispatcher module.
Contains the process that promotes due scheduled jobs.
"""

from jobqueue.dispatcher.main import Dispatcher, run

__all__ = ["Dispatcher", "run"]
