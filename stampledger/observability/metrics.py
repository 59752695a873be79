"""
Metrics Collection with Prometheus.

Exposes ledger, webhook and anchoring metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from stampledger.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    EVENT_TYPE = "event_type"
    AUTHORITY = "authority"
    ERROR_TYPE = "error_type"


class LedgerMetrics:
    """
    Centralized metrics for the StampLedger API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Ledger operations (rate by operation and outcome)
    - Webhook events (rate by event type and action)
    - Timestamp authority submissions (rate, latency)
    - Registration outcomes and reconciliation corrections
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "stampledger_service",
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
            "stampledger_http_requests_total",
            "Total HTTP requests",
            [
                MetricLabels.ENDPOINT.value,
                MetricLabels.METHOD.value,
                MetricLabels.STATUS_CODE.value,
            ],
        )

        self.http_request_duration_seconds = Histogram(
            "stampledger_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT.value, MetricLabels.METHOD.value],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "stampledger_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.METHOD.value],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.ledger_operations_total = Counter(
            "stampledger_ledger_operations_total",
            "Total ledger operations",
            [MetricLabels.OPERATION.value, MetricLabels.OUTCOME.value],
        )

        self.ledger_credits_total = Counter(
            "stampledger_ledger_credits_total",
            "Absolute credit amount moved by ledger operations",
            [MetricLabels.OPERATION.value],
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhook_events_total = Counter(
            "stampledger_webhook_events_total",
            "Total inbound payment gateway events",
            [MetricLabels.EVENT_TYPE.value, "action"],
        )

        self.manual_reviews_total = Counter(
            "stampledger_manual_reviews_total",
            "Records flagged for operator review",
            ["reason"],
        )

        # ====================================================================
        # Timestamp Authority Metrics
        # ====================================================================
        self.authority_submissions_total = Counter(
            "stampledger_authority_submissions_total",
            "Total submissions to timestamping authorities",
            [MetricLabels.AUTHORITY.value, MetricLabels.OUTCOME.value],
        )

        self.authority_duration_seconds = Histogram(
            "stampledger_authority_duration_seconds",
            "Timestamping authority request duration in seconds",
            [MetricLabels.AUTHORITY.value],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0),
        )

        self.registrations_total = Counter(
            "stampledger_registrations_total",
            "Registration submissions by final status and anchor method",
            ["status", "method"],
        )

        # ====================================================================
        # Reconciliation Metrics
        # ====================================================================
        self.reconciliations_total = Counter(
            "stampledger_reconciliations_total",
            "Balance reconciliations by result",
            ["corrected"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "stampledger_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE.value, MetricLabels.OPERATION.value],
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

    def record_ledger_operation(self, operation: str, outcome: str, amount: int = 0) -> None:
        """Record a ledger write attempt and the credits it moved."""
        self.ledger_operations_total.labels(operation=operation, outcome=outcome).inc()
        if amount:
            self.ledger_credits_total.labels(operation=operation).inc(abs(amount))

    def record_webhook_event(self, event_type: str, action: str) -> None:
        """Record webhook event processing."""
        self.webhook_events_total.labels(event_type=event_type, action=action).inc()

    def record_manual_review(self, reason: str) -> None:
        """Record a record flagged for operator attention."""
        self.manual_reviews_total.labels(reason=reason).inc()

    def record_authority_submission(self, authority: str, success: bool, duration: float) -> None:
        """Record one timestamping authority call."""
        self.authority_submissions_total.labels(
            authority=authority, outcome="success" if success else "failure"
        ).inc()
        self.authority_duration_seconds.labels(authority=authority).observe(duration)

    def record_registration(self, status: str, method: str | None) -> None:
        """Record the end state of a registration submission."""
        self.registrations_total.labels(status=status, method=method or "none").inc()

    def record_reconciliation(self, corrected: bool) -> None:
        """Record a reconciliation run."""
        self.reconciliations_total.labels(corrected=str(corrected)).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LedgerMetrics()
