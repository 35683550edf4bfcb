"""
Prometheus metrics for settlement monitoring.

Tracks:
- Gateway API calls, errors and latency
- Callback signature verifications
- Ledger transitions (effective vs. idempotent no-op vs. rejected)
- Refunds and bulk invoice outcomes
- Idempotency key hits
- Plan cache outcomes
- Webhook events
- Outbox queue depth and deliveries
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Gateway metrics
gateway_api_requests_total = Counter(
    "gateway_api_requests_total",
    "Total gateway API requests",
    ["operation", "status"],  # operation: create_order, create_plan, ...
)

gateway_api_errors_total = Counter(
    "gateway_api_errors_total",
    "Total gateway API errors",
    ["operation", "code"],
)

gateway_api_duration_seconds = Histogram(
    "gateway_api_duration_seconds",
    "Gateway API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Settlement metrics
orders_created_total = Counter(
    "settlement_orders_created_total",
    "Gateway orders created for payments",
    ["currency"],
)

callback_verifications_total = Counter(
    "settlement_callback_verifications_total",
    "Checkout callback signature verifications",
    ["result"],  # verified, mismatch
)

payment_transitions_total = Counter(
    "settlement_payment_transitions_total",
    "Payment ledger transitions",
    ["transition", "outcome"],  # outcome: applied, noop, rejected
)

payment_amount_paise = Histogram(
    "settlement_payment_amount_paise",
    "Settled payment amounts in the smallest currency unit",
    buckets=(1000, 5000, 10000, 50000, 100000, 500000, 1000000, 5000000),
)

refunds_total = Counter(
    "settlement_refunds_total",
    "Refunds recorded",
    ["outcome"],  # applied, rejected
)

bulk_invoices_total = Counter(
    "settlement_bulk_invoices_total",
    "Invoices requested through bulk generation",
    ["outcome"],  # created, failed
)

# Idempotency metrics
idempotency_hits_total = Counter(
    "settlement_idempotency_hits_total",
    "Idempotency key lookups",
    ["source"],  # redis, database
)

# Subscription metrics
plan_cache_total = Counter(
    "settlement_plan_cache_total",
    "Per-sport plan cache outcomes",
    ["outcome"],  # hit, created, lost_race
)

subscriptions_created_total = Counter(
    "settlement_subscriptions_created_total",
    "Subscriptions created on the gateway",
)

subscription_status_changes_total = Counter(
    "settlement_subscription_status_changes_total",
    "Subscription status changes recorded",
    ["source", "status"],  # source: webhook, reconciliation, checkout
)

# Webhook metrics
webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # success, duplicate, ignored, error
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished events in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)

outbox_events_failed_total = Counter(
    "outbox_events_failed_total",
    "Outbox deliveries that failed and will be retried",
    ["event_type"],
)

subscription_sync_last_run_timestamp = Gauge(
    "subscription_sync_last_run_timestamp",
    "Timestamp of last subscription status refresh",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record gateway API call."""
        gateway_api_requests_total.labels(operation=operation, status=status).inc()
        gateway_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(operation: str, code: str) -> None:
        """Record gateway API error."""
        gateway_api_errors_total.labels(operation=operation, code=code).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_order_created(currency: str) -> None:
        orders_created_total.labels(currency=currency).inc()

    @staticmethod
    def record_callback_verification(verified: bool) -> None:
        """Record a checkout signature check."""
        callback_verifications_total.labels(
            result="verified" if verified else "mismatch"
        ).inc()

    @staticmethod
    def record_transition(transition: str, outcome: str, amount: int | None = None) -> None:
        """Record a payment ledger transition."""
        payment_transitions_total.labels(transition=transition, outcome=outcome).inc()
        if amount is not None and outcome == "applied":
            payment_amount_paise.observe(amount)

    @staticmethod
    def record_refund(outcome: str) -> None:
        refunds_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_bulk_invoices(created: int, failed: int) -> None:
        bulk_invoices_total.labels(outcome="created").inc(created)
        bulk_invoices_total.labels(outcome="failed").inc(failed)

    @staticmethod
    def record_idempotency_hit(source: str) -> None:
        """Record idempotency lookup outcome."""
        idempotency_hits_total.labels(source=source).inc()

    @staticmethod
    def record_plan_cache(outcome: str) -> None:
        plan_cache_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_subscription_created() -> None:
        subscriptions_created_total.inc()

    @staticmethod
    def record_subscription_status_change(source: str, status: str) -> None:
        subscription_status_changes_total.labels(source=source, status=status).inc()

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_outbox_event_failed(event_type: str) -> None:
        outbox_events_failed_total.labels(event_type=event_type).inc()

    @staticmethod
    def mark_subscription_sync_run() -> None:
        subscription_sync_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
