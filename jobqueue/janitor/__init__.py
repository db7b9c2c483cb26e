"""
Janitor module.
Contains the concurrency maintenance process.
"""

from jobqueue.janitor.main import Janitor, MaintenanceReport, run

__all__ = ["Janitor", "MaintenanceReport", "run"]
