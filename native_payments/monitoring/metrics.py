"""
Prometheus metrics for payment system monitoring.

Tracks:
- Payment requests and amounts
- Subscription billing attempts and retry transitions
- Provider API calls, errors and circuit breaker state
- Webhook processing
- Outbox queue depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Payment metrics
payment_requests_total = Counter(
    "payment_requests_total",
    "Total number of payment requests",
    ["provider", "status", "currency"],
)

payment_processing_duration_seconds = Histogram(
    "payment_processing_duration_seconds",
    "Payment processing duration in seconds",
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

payment_amount_cents = Histogram(
    "payment_amount_cents",
    "Payment amounts in cents",
    buckets=(50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

# Idempotency metrics
idempotency_cache_hits_total = Counter(
    "idempotency_cache_hits_total",
    "Total idempotency cache hits",
    ["source"],  # redis, database, miss
)

# Billing metrics
billing_attempts_total = Counter(
    "billing_attempts_total",
    "Subscription billing attempts by outcome",
    ["outcome"],  # charged, declined, deferred, suspended, cancelled, skipped
)

billing_attempt_duration_seconds = Histogram(
    "billing_attempt_duration_seconds",
    "Duration of a single subscription billing attempt",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

billing_status_transitions_total = Counter(
    "billing_status_transitions_total",
    "Subscription billing_status transitions",
    ["from_status", "to_status"],
)

billing_cycle_due_subscriptions = Gauge(
    "billing_cycle_due_subscriptions",
    "Subscriptions found due in the last scheduler cycle",
)

billing_lease_conflicts_total = Counter(
    "billing_lease_conflicts_total",
    "Billing attempts skipped because another worker held the lease",
)

# Provider API metrics
provider_api_requests_total = Counter(
    "provider_api_requests_total",
    "Total payment provider API requests",
    ["provider", "operation", "status"],
)

provider_api_errors_total = Counter(
    "provider_api_errors_total",
    "Total payment provider API errors",
    ["provider", "error_type"],  # transient, permanent, rate_limit
)

provider_api_duration_seconds = Histogram(
    "provider_api_duration_seconds",
    "Payment provider API call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

provider_circuit_breaker_state = Gauge(
    "provider_circuit_breaker_state",
    "Provider circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["provider"],
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["provider", "event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["provider", "event_type", "status"],  # processed, duplicate, ignored, failed
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["provider"],
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

outbox_delivery_failures_total = Counter(
    "outbox_delivery_failures_total",
    "Outbox deliveries that raised, by whether the event was parked",
    ["event_type", "parked"],
)

# Analytics metrics
analytics_snapshot_duration_seconds = Histogram(
    "analytics_snapshot_duration_seconds",
    "Analytics snapshot computation duration in seconds",
    ["metric_type"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0),
)

analytics_snapshot_last_run_timestamp = Gauge(
    "analytics_snapshot_last_run_timestamp",
    "Timestamp of last scheduled analytics snapshot",
)

# Lock metrics
distributed_lock_acquisitions_total = Counter(
    "distributed_lock_acquisitions_total",
    "Total distributed lock acquisitions",
    ["status"],  # acquired, failed
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_payment_request(
        provider: str, status: str, currency: str, amount_cents: int
    ) -> None:
        """Record a payment request."""
        payment_requests_total.labels(provider=provider, status=status, currency=currency).inc()
        payment_amount_cents.observe(amount_cents)

    @staticmethod
    def record_payment_duration(duration_seconds: float) -> None:
        """Record payment processing duration."""
        payment_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_idempotency_cache_hit(source: str) -> None:
        """Record idempotency cache hit."""
        idempotency_cache_hits_total.labels(source=source).inc()

    @staticmethod
    def record_billing_attempt(outcome: str, duration_seconds: float) -> None:
        """Record a subscription billing attempt."""
        billing_attempts_total.labels(outcome=outcome).inc()
        billing_attempt_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_billing_transition(from_status: str, to_status: str) -> None:
        """Record a billing_status change."""
        billing_status_transitions_total.labels(
            from_status=from_status, to_status=to_status
        ).inc()

    @staticmethod
    def set_due_subscriptions(count: int) -> None:
        """Set number of due subscriptions seen by the scheduler."""
        billing_cycle_due_subscriptions.set(count)

    @staticmethod
    def record_lease_conflict() -> None:
        """Record a billing attempt that lost the lease race."""
        billing_lease_conflicts_total.inc()

    @staticmethod
    def record_provider_api_call(
        provider: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record provider API call."""
        provider_api_requests_total.labels(
            provider=provider, operation=operation, status=status
        ).inc()
        provider_api_duration_seconds.labels(provider=provider, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_provider_api_error(provider: str, error_type: str) -> None:
        """Record provider API error."""
        provider_api_errors_total.labels(provider=provider, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(provider: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        provider_circuit_breaker_state.labels(provider=provider).set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(
        provider: str, event_type: str, status: str, duration_seconds: float
    ) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(provider=provider, event_type=event_type).inc()
        webhook_events_processed_total.labels(
            provider=provider, event_type=event_type, status=status
        ).inc()
        webhook_processing_duration_seconds.labels(provider=provider).observe(duration_seconds)

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_outbox_delivery_failure(event_type: str, parked: bool) -> None:
        outbox_delivery_failures_total.labels(
            event_type=event_type, parked=str(parked).lower()
        ).inc()

    @staticmethod
    def record_snapshot(metric_type: str, duration_seconds: float, scheduled: bool = False) -> None:
        """Record an analytics snapshot computation."""
        analytics_snapshot_duration_seconds.labels(metric_type=metric_type).observe(
            duration_seconds
        )
        if scheduled:
            analytics_snapshot_last_run_timestamp.set(time.time())

    @staticmethod
    def record_distributed_lock(status: str) -> None:
        """Record distributed lock acquisition."""
        distributed_lock_acquisitions_total.labels(status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
