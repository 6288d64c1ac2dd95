"""
Metrics Collection with Prometheus.

Exposes token lifecycle, sync job and upstream metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from displex.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    SERVICE = "service"
    OUTCOME = "outcome"
    JOB = "job"
    ERROR_TYPE = "error_type"


class DisplexMetrics:
    """
    Centralized metrics for displex.

    Covers:
    - HTTP requests on the ops API (rate, duration)
    - Token status transitions and refresh outcomes
    - Per-item outcomes of the batch jobs
    - Upstream calls to Discord, Tautulli and Overseerr
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "displex_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.application_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "displex_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "displex_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "displex_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Token Lifecycle Metrics
        # ====================================================================
        self.token_transitions_total = Counter(
            "displex_token_transitions_total",
            "Token status transitions by resulting status",
            ["status"],
        )

        self.token_refresh_total = Counter(
            "displex_token_refresh_total",
            "Token refresh attempts by outcome",
            [MetricLabels.OUTCOME],
        )

        self.tokens_purged_total = Counter(
            "displex_tokens_purged_total",
            "Token records deleted by the retention purge",
        )

        # ====================================================================
        # Job Metrics
        # ====================================================================
        self.job_runs_total = Counter(
            "displex_job_runs_total",
            "Batch job passes",
            [MetricLabels.JOB, "completed"],
        )

        self.job_duration_seconds = Histogram(
            "displex_job_duration_seconds",
            "Batch job pass duration in seconds",
            [MetricLabels.JOB],
            buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 300.0, 900.0),
        )

        self.job_items_total = Counter(
            "displex_job_items_total",
            "Per-item outcomes of batch jobs",
            [MetricLabels.JOB, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Upstream Metrics
        # ====================================================================
        self.upstream_requests_total = Counter(
            "displex_upstream_requests_total",
            "Calls to upstream services",
            [MetricLabels.SERVICE, MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "displex_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_token_transition(self, status: str) -> None:
        self.token_transitions_total.labels(status=status).inc()

    def record_token_refresh(self, outcome: str) -> None:
        self.token_refresh_total.labels(outcome=outcome).inc()

    def record_job_run(self, job: str, completed: bool, duration: float) -> None:
        """Record one pass of a batch job."""
        self.job_runs_total.labels(job=job, completed=str(completed)).inc()
        self.job_duration_seconds.labels(job=job).observe(duration)

    def record_job_item(self, job: str, outcome: str) -> None:
        self.job_items_total.labels(job=job, outcome=outcome).inc()

    def record_upstream(self, service: str, operation: str, outcome: str) -> None:
        self.upstream_requests_total.labels(
            service=service, operation=operation, outcome=outcome
        ).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = DisplexMetrics()
