"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from jobqueue.constants import (
    METRIC_JOB_DURATION,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_DISCARDED,
    METRIC_JOBS_DISPATCHED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_UNBLOCKED,
    METRIC_LEASE_EXPIRED,
    METRIC_QUEUE_DEPTH,
    METRIC_SEMAPHORE_ACQUIRE,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Queue depth per queue and execution state
    - Enqueue outcomes and discards
    - Scheduled job dispatching and blocked job promotion
    - Semaphore acquisitions and expired leases
    - Job execution results and duration
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs per queue and execution state",
            ["queue_name", "status"],
            registry=self._registry,
        )

        # Outcome is the initial state: ready, scheduled, blocked or discarded
        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["queue_name", "outcome"],
            registry=self._registry,
        )

        self.jobs_dispatched = Counter(
            METRIC_JOBS_DISPATCHED,
            "Total number of scheduled jobs moved out of the scheduled state",
            ["outcome"],
            registry=self._registry,
        )

        self.jobs_discarded = Counter(
            METRIC_JOBS_DISCARDED,
            "Total number of jobs discarded",
            ["status"],
            registry=self._registry,
        )

        self.jobs_unblocked = Counter(
            METRIC_JOBS_UNBLOCKED,
            "Total number of blocked jobs promoted to ready",
            registry=self._registry,
        )

        self.semaphore_acquire = Counter(
            METRIC_SEMAPHORE_ACQUIRE,
            "Total number of semaphore acquisition attempts",
            ["outcome"],
            registry=self._registry,
        )

        self.lease_expired = Counter(
            METRIC_LEASE_EXPIRED,
            "Total number of semaphores reset after their lease expired",
            registry=self._registry,
        )

        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of jobs executed",
            ["queue_name", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["queue_name", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

    def record_job_enqueued(self, queue_name: str, outcome: str) -> None:
        """Record where a newly enqueued job landed."""
        self.jobs_enqueued.labels(queue_name=queue_name, outcome=outcome).inc()

    def record_jobs_dispatched(self, outcome: str, count: int = 1) -> None:
        """Record scheduled jobs leaving the scheduled state."""
        if count:
            self.jobs_dispatched.labels(outcome=outcome).inc(count)

    def record_jobs_discarded(self, status: str, count: int = 1) -> None:
        """Record discarded jobs by the state they were discarded from."""
        if count:
            self.jobs_discarded.labels(status=status).inc(count)

    def record_job_unblocked(self) -> None:
        """Record a blocked job promoted to ready."""
        self.jobs_unblocked.inc()

    def record_semaphore_acquire(self, acquired: bool) -> None:
        """Record a semaphore acquisition attempt."""
        self.semaphore_acquire.labels(outcome="acquired" if acquired else "full").inc()

    def record_leases_expired(self, count: int) -> None:
        """Record semaphores reset by maintenance."""
        if count:
            self.lease_expired.inc(count)

    def record_job_completed(
        self,
        queue_name: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record a job execution result."""
        self.jobs_completed.labels(queue_name=queue_name, status=status).inc()
        self.job_duration.labels(queue_name=queue_name, status=status).observe(
            duration_seconds
        )

    def update_queue_depth(self, stats: dict[str, dict[str, int]]) -> None:
        """Update queue depth gauges from per-queue state counts."""
        for queue_name, counts in stats.items():
            for status, count in counts.items():
                self.queue_depth.labels(queue_name=queue_name, status=status).set(count)


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: If given, expose metrics over HTTP on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port is not None:
        start_http_server(port)
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
