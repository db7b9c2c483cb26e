"""
Persistent Job Queue

A database-backed, multi-process job queue with ready/scheduled/blocked/claimed
execution states and semaphore-based concurrency limits shared across processes.
"""

__version__ = "1.0.0"
