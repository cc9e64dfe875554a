"""
Prometheus metrics collection.
"""

import logging

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

from jobflow.constants import (
    METRIC_API_LATENCY,
    METRIC_API_REQUESTS,
    METRIC_DEAD_LETTERED,
    METRIC_DUPLICATES_SKIPPED,
    METRIC_EVENTS_RECONCILED,
    METRIC_GUARD_UNAVAILABLE,
    METRIC_IN_FLIGHT,
    METRIC_JOB_DURATION,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_SUBMITTED,
    METRIC_POISON_EVENTS,
    METRIC_RETRIES_SCHEDULED,
    METRIC_STALE_WRITES,
    METRIC_STATE_CONFLICTS,
)

logger = logging.getLogger(__name__)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for job orchestration.

    Collects metrics for:
    - Job submissions and terminal outcomes
    - Handler execution duration
    - Duplicate deliveries, retries and dead-lettering
    - Reconciliation outcomes and state conflicts
    - API requests
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.jobs_submitted = Counter(
            METRIC_JOBS_SUBMITTED,
            "Total number of jobs submitted",
            ["job_type", "priority"],
            registry=self._registry,
        )

        # Terminal outcomes as recorded by the reconciler
        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of jobs reaching a terminal status",
            ["job_type", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Handler execution duration in seconds",
            ["job_type", "outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.duplicates_skipped = Counter(
            METRIC_DUPLICATES_SKIPPED,
            "Deliveries skipped because the job was already claimed",
            ["job_type"],
            registry=self._registry,
        )

        self.retries_scheduled = Counter(
            METRIC_RETRIES_SCHEDULED,
            "Total number of retries scheduled",
            ["job_type"],
            registry=self._registry,
        )

        self.dead_lettered = Counter(
            METRIC_DEAD_LETTERED,
            "Total number of jobs moved to the dead-letter channel",
            ["job_type"],
            registry=self._registry,
        )

        self.events_reconciled = Counter(
            METRIC_EVENTS_RECONCILED,
            "Status events processed by the reconciler",
            ["event_type", "outcome"],
            registry=self._registry,
        )

        self.state_conflicts = Counter(
            METRIC_STATE_CONFLICTS,
            "Status events that arrived for a job already in a terminal state",
            registry=self._registry,
        )

        self.stale_writes = Counter(
            METRIC_STALE_WRITES,
            "Conditional writes rejected by the optimistic version check",
            registry=self._registry,
        )

        self.guard_unavailable = Counter(
            METRIC_GUARD_UNAVAILABLE,
            "Idempotency guard calls that failed to reach the backing store",
            ["component"],
            registry=self._registry,
        )

        self.poison_events = Counter(
            METRIC_POISON_EVENTS,
            "Events routed to the dead-letter channel because they cannot be processed",
            ["channel", "reason"],
            registry=self._registry,
        )

        self.in_flight = Gauge(
            METRIC_IN_FLIGHT,
            "Deliveries currently being processed",
            ["component"],
            registry=self._registry,
        )

        self.api_requests = Counter(
            METRIC_API_REQUESTS,
            "Total number of API requests",
            ["method", "endpoint", "status"],
            registry=self._registry,
        )

        self.api_latency = Histogram(
            METRIC_API_LATENCY,
            "API request latency in seconds",
            ["method", "endpoint"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self._registry,
        )

    def record_job_submitted(self, job_type: str, priority: int) -> None:
        """Record a job submission."""
        self.jobs_submitted.labels(job_type=job_type, priority=str(priority)).inc()

    def record_job_executed(
        self,
        job_type: str,
        outcome: str,
        duration_seconds: float,
    ) -> None:
        """Record one handler execution attempt."""
        self.job_duration.labels(job_type=job_type, outcome=outcome).observe(
            duration_seconds
        )

    def record_job_finished(self, job_type: str, status: str) -> None:
        """Record a job reaching a terminal status."""
        self.jobs_completed.labels(job_type=job_type, status=status).inc()

    def record_duplicate_skipped(self, job_type: str) -> None:
        self.duplicates_skipped.labels(job_type=job_type).inc()

    def record_retry_scheduled(self, job_type: str) -> None:
        self.retries_scheduled.labels(job_type=job_type).inc()

    def record_dead_lettered(self, job_type: str) -> None:
        self.dead_lettered.labels(job_type=job_type).inc()
        self.record_job_finished(job_type, "DEAD_LETTER")

    def record_event_reconciled(self, event_type: str, outcome: str) -> None:
        self.events_reconciled.labels(event_type=event_type, outcome=outcome).inc()

    def record_state_conflict(self) -> None:
        self.state_conflicts.inc()

    def record_stale_write(self) -> None:
        self.stale_writes.inc()

    def record_guard_unavailable(self, component: str) -> None:
        self.guard_unavailable.labels(component=component).inc()

    def record_poison_event(self, channel: str, reason: str) -> None:
        self.poison_events.labels(channel=channel, reason=reason).inc()

    def record_api_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration_seconds: float,
    ) -> None:
        """Record an API request."""
        self.api_requests.labels(
            method=method,
            endpoint=endpoint,
            status=str(status),
        ).inc()
        self.api_latency.labels(method=method, endpoint=endpoint).observe(
            duration_seconds
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the process-wide metrics collector.

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


def start_metrics_server(port: int) -> None:
    """
    Serve the process-wide registry over HTTP for processes without an API.

    A port already taken by a sibling process is logged and skipped.
    """
    try:
        start_http_server(port, registry=get_metrics().registry)
    except OSError as e:
        logger.warning("Metrics server not started on port %d: %s", port, e)
        return
    logger.info("Metrics server listening on port %d", port)
