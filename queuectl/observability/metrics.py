"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from queuectl.constants import (
    METRIC_DLQ_RETRIES,
    METRIC_JOB_DURATION,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FINISHED,
    METRIC_QUEUE_DEPTH,
    METRIC_STORE_ERRORS,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for queuectl.

    Collects metrics for:
    - Job counts per state
    - Enqueues and claims
    - Execution outcomes and duration
    - Dead-letter retries
    - Store errors seen by workers
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
            "Number of jobs per state",
            ["state"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of enqueue calls",
            registry=self._registry,
        )

        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of jobs claimed",
            ["worker_id"],
            registry=self._registry,
        )

        # outcome is completed, retried or dead
        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of job executions by outcome",
            ["outcome"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.dlq_retries = Counter(
            METRIC_DLQ_RETRIES,
            "Total number of jobs retried from the dead-letter queue",
            registry=self._registry,
        )

        self.store_errors = Counter(
            METRIC_STORE_ERRORS,
            "Total number of store errors seen by workers",
            ["worker_id"],
            registry=self._registry,
        )

    def record_job_enqueued(self) -> None:
        self.jobs_enqueued.inc()

    def record_job_claimed(self, worker_id: str) -> None:
        self.jobs_claimed.labels(worker_id=worker_id).inc()

    def record_job_finished(self, outcome: str, duration_seconds: float) -> None:
        """Record one execution and how it ended."""
        self.jobs_finished.labels(outcome=outcome).inc()
        self.job_duration.labels(outcome=outcome).observe(duration_seconds)

    def record_dlq_retry(self) -> None:
        self.dlq_retries.inc()

    def record_store_error(self, worker_id: str) -> None:
        self.store_errors.labels(worker_id=worker_id).inc()

    def update_queue_depth(self, counts: dict[str, int]) -> None:
        """Update the per-state gauges from a summary."""
        for state, count in counts.items():
            self.queue_depth.labels(state=state).set(count)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
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
