"""
Prometheus metrics for the KLIPZ ledger and payout service.

Tracks:
- Ledger credits and debits by reference type
- Webhook intake outcomes
- Stripe API calls and errors
- Payout workflow transitions
- Reconciliation results
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Ledger metrics
ledger_mutations_total = Counter(
    "ledger_mutations_total",
    "Total ledger mutations",
    ["direction", "reference_type"],
)

ledger_mutation_amount_cents = Histogram(
    "ledger_mutation_amount_cents",
    "Ledger mutation amounts in cents",
    ["direction"],
    buckets=(100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000, 5000000),
)

ledger_insufficient_funds_total = Counter(
    "ledger_insufficient_funds_total",
    "Debits rejected for insufficient funds",
)

# Stripe API metrics
stripe_api_requests_total = Counter(
    "stripe_api_requests_total",
    "Total Stripe API requests",
    ["operation", "status"],
)

stripe_api_errors_total = Counter(
    "stripe_api_errors_total",
    "Total Stripe API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

stripe_api_duration_seconds = Histogram(
    "stripe_api_duration_seconds",
    "Stripe API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

stripe_circuit_breaker_state = Gauge(
    "stripe_circuit_breaker_state",
    "Stripe circuit breaker state (0=closed, 1=open, 2=half_open)",
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
    ["event_type", "status"],  # processed, ignored, duplicate, failed
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Payout metrics
payouts_total = Counter(
    "payouts_total",
    "Withdrawals reaching a terminal state",
    ["source", "status"],  # status: completed, failed
)

payout_amount_cents = Histogram(
    "payout_amount_cents",
    "Completed payout amounts in cents",
    buckets=(100, 500, 1000, 5000, 10000, 50000, 100000, 500000),
)

payout_reversals_total = Counter(
    "payout_reversals_total",
    "Transfers reversed after a failed debit",
    ["status"],  # reversed, failed
)

payouts_resumed_total = Counter(
    "payouts_resumed_total",
    "Stuck withdrawals picked up by the recovery worker",
)

# Reconciliation metrics
reconciliation_discrepancies_total = Gauge(
    "reconciliation_discrepancies_total",
    "Total reconciliation discrepancies",
)

reconciliation_discrepancy_cents = Gauge(
    "reconciliation_discrepancy_cents",
    "Reconciliation discrepancy amount in cents",
)

reconciliation_ledger_drift_total = Gauge(
    "reconciliation_ledger_drift_total",
    "Wallets whose balance disagrees with their ledger entries",
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Reconciliation job duration in seconds",
    buckets=(10, 30, 60, 120, 300, 600, 1800),
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_ledger_mutation(direction: str, reference_type: str, amount_cents: int) -> None:
        """Record a ledger credit or debit."""
        ledger_mutations_total.labels(direction=direction, reference_type=reference_type).inc()
        ledger_mutation_amount_cents.labels(direction=direction).observe(amount_cents)

    @staticmethod
    def record_insufficient_funds() -> None:
        ledger_insufficient_funds_total.inc()

    @staticmethod
    def record_stripe_api_call(
        operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record Stripe API call."""
        stripe_api_requests_total.labels(operation=operation, status=status).inc()
        stripe_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_stripe_api_error(error_type: str) -> None:
        """Record Stripe API error."""
        stripe_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        stripe_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_payout(source: str, status: str, amount_cents: int) -> None:
        """Record a withdrawal reaching completed or failed."""
        payouts_total.labels(source=source, status=status).inc()
        if status == "completed":
            payout_amount_cents.observe(amount_cents)

    @staticmethod
    def record_payout_reversal(status: str) -> None:
        payout_reversals_total.labels(status=status).inc()

    @staticmethod
    def record_payouts_resumed(count: int) -> None:
        payouts_resumed_total.inc(count)

    @staticmethod
    def set_reconciliation_metrics(
        discrepancies_count: int,
        discrepancy_cents: int,
        ledger_drift_count: int,
        duration_seconds: float,
    ) -> None:
        """Set reconciliation metrics."""
        reconciliation_discrepancies_total.set(discrepancies_count)
        reconciliation_discrepancy_cents.set(discrepancy_cents)
        reconciliation_ledger_drift_total.set(ledger_drift_count)
        reconciliation_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())


metrics = MetricsCollector()
