"""
Prometheus metrics for settlement monitoring.

Tracks:
- Orchestrator operations by outcome
- Banking transfer outcomes per leg
- Biometric identification outcomes
- Audit relay deliveries and queue depth
- Settlement token store operations
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Orchestrator metrics
transactions_total = Counter(
    "biopay_transactions_total",
    "Total orchestrator operations",
    ["operation", "status"],  # operation: initiate, verify_and_charge, refund, cancel
)

transaction_amount = Histogram(
    "biopay_transaction_amount",
    "Settled transaction amounts in major currency units",
    ["currency"],
    buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000, 5000),
)

operation_duration_seconds = Histogram(
    "biopay_operation_duration_seconds",
    "Orchestrator operation duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Banking metrics
ledger_transfers_total = Counter(
    "biopay_ledger_transfers_total",
    "Total banking transfers",
    ["leg", "outcome"],  # leg: principal, fee, refund_principal, refund_fee
)

ledger_transfer_duration_seconds = Histogram(
    "biopay_ledger_transfer_duration_seconds",
    "Banking transfer call duration in seconds",
    ["leg"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

card_verifications_total = Counter(
    "biopay_card_verifications_total",
    "Total card verification requests",
    ["outcome"],
)

# Biometric metrics
identity_requests_total = Counter(
    "biopay_identity_requests_total",
    "Total biometric service requests",
    ["operation", "outcome"],  # outcome: match, no_match, success, failure, error
)

# Audit relay metrics
audit_records_total = Counter(
    "biopay_audit_records_total",
    "Total audit relay records by outcome",
    ["outcome"],  # recorded, already_recorded, failed, dropped, skipped
)

audit_record_attempts_total = Counter(
    "biopay_audit_record_attempts_total",
    "Total audit relay POST attempts",
)

audit_queue_depth = Gauge(
    "biopay_audit_queue_depth",
    "Number of audit jobs waiting for a worker",
)

# Token store metrics
token_store_operations_total = Counter(
    "biopay_token_store_operations_total",
    "Total settlement token store operations",
    ["operation", "outcome"],
)

# Expiry metrics
expired_transactions_total = Counter(
    "biopay_expired_transactions_total",
    "Pending transactions cancelled after their verification window",
)

expiry_last_run_timestamp = Gauge(
    "biopay_expiry_last_run_timestamp",
    "Timestamp of last expiry sweep",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_operation(operation: str, status: str, duration_seconds: float) -> None:
        """Record an orchestrator operation."""
        transactions_total.labels(operation=operation, status=status).inc()
        operation_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_settlement(currency: str, amount: float) -> None:
        """Record a settled amount."""
        transaction_amount.labels(currency=currency).observe(amount)

    @staticmethod
    def record_transfer(leg: str, outcome: str, duration_seconds: float) -> None:
        """Record a banking transfer call."""
        ledger_transfers_total.labels(leg=leg, outcome=outcome).inc()
        ledger_transfer_duration_seconds.labels(leg=leg).observe(duration_seconds)

    @staticmethod
    def record_card_verification(outcome: str) -> None:
        card_verifications_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_identity_request(operation: str, outcome: str) -> None:
        identity_requests_total.labels(operation=operation, outcome=outcome).inc()

    @staticmethod
    def record_audit_outcome(outcome: str) -> None:
        """Record the final outcome of one audit record."""
        audit_records_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_audit_attempt() -> None:
        audit_record_attempts_total.inc()

    @staticmethod
    def set_audit_queue_depth(depth: int) -> None:
        """Set audit queue depth."""
        audit_queue_depth.set(depth)

    @staticmethod
    def record_token_operation(operation: str, outcome: str) -> None:
        token_store_operations_total.labels(operation=operation, outcome=outcome).inc()

    @staticmethod
    def record_expiry_sweep(expired_count: int) -> None:
        """Record an expiry sweep."""
        expired_transactions_total.inc(expired_count)
        expiry_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
