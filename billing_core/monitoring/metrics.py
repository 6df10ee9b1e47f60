"""
Prometheus metrics for payment reconciliation monitoring.

Tracks:
- Gateway request counts and latency by operation
- Status poll transport errors
- Payment attempts by subject and terminal state
- Grace checks issued after the approval deadline
"""
from prometheus_client import Counter, Histogram

# Gateway metrics
gateway_requests_total = Counter(
    "billing_gateway_requests_total",
    "Total payment gateway requests",
    ["operation", "outcome"],  # operation: initiate, status, balance
)

gateway_request_duration_seconds = Histogram(
    "billing_gateway_request_duration_seconds",
    "Payment gateway request duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

# Polling metrics
status_poll_errors_total = Counter(
    "billing_status_poll_errors_total",
    "Status polls skipped because of transport errors",
)

grace_checks_total = Counter(
    "billing_grace_checks_total",
    "Final status checks issued after the approval deadline",
    ["result"],  # succeeded, timed_out
)

# Payment outcome metrics
payment_attempts_total = Counter(
    "billing_payment_attempts_total",
    "Payment attempts by terminal state",
    ["subject", "state"],
)

payment_approval_duration_seconds = Histogram(
    "billing_payment_approval_duration_seconds",
    "Seconds from initiation to terminal state",
    ["subject"],
    buckets=(5, 10, 20, 30, 45, 60, 90, 120, 150),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_gateway_call(operation: str, outcome: str, duration_seconds: float) -> None:
        """Record a gateway HTTP call."""
        gateway_requests_total.labels(operation=operation, outcome=outcome).inc()
        gateway_request_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_poll_error() -> None:
        """Record a status poll skipped because of a transport error."""
        status_poll_errors_total.inc()

    @staticmethod
    def record_grace_check(result: str) -> None:
        """Record the outcome of a post-deadline status check."""
        grace_checks_total.labels(result=result).inc()

    @staticmethod
    def record_payment_outcome(subject: str, state: str, duration_seconds: float) -> None:
        """Record a payment attempt reaching a terminal state."""
        payment_attempts_total.labels(subject=subject, state=state).inc()
        payment_approval_duration_seconds.labels(subject=subject).observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
