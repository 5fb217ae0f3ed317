"""
Prometheus metrics for payment reconciliation monitoring.

Tracks:
- Reconciliation outcomes per verification path
- Paystack API calls, errors and latency
- Webhook deliveries by event and outcome
- Amount mismatches and audit write failures
"""
from prometheus_client import Counter, Histogram

# Reconciliation metrics
reconciliations_total = Counter(
    "reconciliations_total",
    "Total reconciliation decisions",
    ["path", "outcome"],  # path: student, webhook, admin
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Reconciliation duration in seconds, gateway call included",
    ["path"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0),
)

amount_mismatches_total = Counter(
    "amount_mismatches_total",
    "Confirmed charges rejected because the amount was outside tolerance",
)

transactions_initialized_total = Counter(
    "transactions_initialized_total",
    "Total checkout sessions initialized with the gateway",
    ["payment_type"],
)

# Paystack API metrics
paystack_api_requests_total = Counter(
    "paystack_api_requests_total",
    "Total Paystack API requests",
    ["operation", "status"],  # operation: initialize, verify
)

paystack_api_errors_total = Counter(
    "paystack_api_errors_total",
    "Total Paystack API errors",
    ["error_type"],  # timeout, network, upstream, malformed
)

paystack_api_duration_seconds = Histogram(
    "paystack_api_duration_seconds",
    "Paystack API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # processed, ignored, rejected, error
)

# Audit metrics
audit_write_failures_total = Counter(
    "audit_write_failures_total",
    "Audit entries that could not be written",
    ["action"],
)


class MetricsCollector:
    """
    Helper class for recording metrics.

    Provides convenient methods for updating Prometheus metrics.
    """

    @staticmethod
    def record_reconciliation(path: str, outcome: str, duration_seconds: float) -> None:
        """
        Record a reconciliation decision.

        Args:
            path: Verification path (student, webhook, admin)
            outcome: Reconciliation outcome
            duration_seconds: Time spent, gateway call included
        """
        reconciliations_total.labels(path=path, outcome=outcome).inc()
        reconciliation_duration_seconds.labels(path=path).observe(duration_seconds)

    @staticmethod
    def record_amount_mismatch() -> None:
        amount_mismatches_total.inc()

    @staticmethod
    def record_initialization(payment_type: str) -> None:
        transactions_initialized_total.labels(payment_type=payment_type).inc()

    @staticmethod
    def record_gateway_request(operation: str, status: str, duration_seconds: float) -> None:
        """
        Record Paystack API request.

        Args:
            operation: API operation name
            status: Request status (success, error)
            duration_seconds: Request duration
        """
        paystack_api_requests_total.labels(operation=operation, status=status).inc()
        paystack_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        paystack_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def record_webhook_received(event_type: str) -> None:
        webhook_events_received_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_webhook_processed(event_type: str, status: str) -> None:
        """
        Record webhook event processing.

        Args:
            event_type: Paystack event type, or "unknown" before parsing
            status: processed, ignored, rejected or error
        """
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()

    @staticmethod
    def record_audit_failure(action: str) -> None:
        audit_write_failures_total.labels(action=action).inc()


# Global metrics collector instance
metrics = MetricsCollector()
