"""
Metrics Collection with Prometheus.

Exposes grant pipeline and HTTP metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from benefit_grant.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    GRANT_STATUS = "grant_status"
    SOURCE_CHANNEL = "source_channel"
    ERROR_TYPE = "error_type"


class GrantMetrics:
    """
    Centralized metrics for the Benefit Grant API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Grants (rate by outcome and channel, duration)
    - Payment locks (wait time, timeouts)
    - Idempotency cache (hits/misses)
    - Receipt hook (success/failure)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "benefit_grant_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "benefit_grant_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "benefit_grant_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "benefit_grant_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Grant Metrics
        # ====================================================================
        self.grants_total = Counter(
            "benefit_grant_grants_total",
            "Total grant attempts by outcome",
            [MetricLabels.GRANT_STATUS, MetricLabels.SOURCE_CHANNEL],
        )

        self.grant_duration_seconds = Histogram(
            "benefit_grant_grant_duration_seconds",
            "Grant attempt duration in seconds",
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 10.0),
        )

        # ====================================================================
        # Lock and Cache Metrics
        # ====================================================================
        self.lock_wait_seconds = Histogram(
            "benefit_grant_lock_wait_seconds",
            "Time spent waiting for a payment lock",
            buckets=(0.0001, 0.001, 0.01, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.lock_timeouts_total = Counter(
            "benefit_grant_lock_timeouts_total",
            "Payment lock waits that timed out",
        )

        self.cache_lookups_total = Counter(
            "benefit_grant_cache_lookups_total",
            "Idempotency cache lookups",
            ["hit"],
        )

        # ====================================================================
        # Receipt Metrics
        # ====================================================================
        self.receipts_total = Counter(
            "benefit_grant_receipts_total",
            "Receipt hook invocations",
            ["success"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "benefit_grant_errors_total",
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

    def record_grant(self, grant_status: str, source_channel: str, duration: float) -> None:
        """Record grant attempt metrics."""
        self.grants_total.labels(
            grant_status=grant_status, source_channel=source_channel
        ).inc()
        self.grant_duration_seconds.observe(duration)

    def record_lock_wait(self, duration: float, acquired: bool) -> None:
        """Record payment lock wait."""
        self.lock_wait_seconds.observe(duration)
        if not acquired:
            self.lock_timeouts_total.inc()

    def record_cache_lookup(self, hit: bool) -> None:
        """Record idempotency cache lookup."""
        self.cache_lookups_total.labels(hit=str(hit)).inc()

    def record_receipt(self, success: bool) -> None:
        """Record receipt hook result."""
        self.receipts_total.labels(success=str(success)).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = GrantMetrics()
