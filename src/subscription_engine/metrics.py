"""Business metrics for Prometheus monitoring."""
from prometheus_client import Counter, Histogram

# Entitlement metrics
entitlement_checks_total = Counter(
    "entitlement_checks_total",
    "Total entitlement checks",
    labelnames=["feature_code", "outcome"],  # outcome: allowed, limit_exceeded, unavailable
)

usage_resets_total = Counter(
    "usage_resets_total",
    "Usage counters reset because their reset date passed",
    labelnames=["frequency"],
)

# Subscription metrics
subscription_transitions_total = Counter(
    "subscription_transitions_total",
    "Subscription status transitions",
    labelnames=["from_status", "to_status"],
)

plan_changes_total = Counter(
    "plan_changes_total",
    "Plan changes requested",
    labelnames=["change_type"],  # upgrade, downgrade
)

# Webhook metrics
webhook_events_total = Counter(
    "payment_webhook_events_total",
    "Inbound gateway webhook events",
    labelnames=["gateway", "outcome"],  # processed, duplicate, in_progress, failed
)

# Payment metrics
payments_recorded_total = Counter(
    "payments_recorded_total",
    "Payment transactions recorded",
    labelnames=["gateway", "status", "currency"],
)

refunds_total = Counter(
    "refunds_total",
    "Refunds applied",
    labelnames=["kind", "currency"],  # kind: partial, full
)

invoices_issued_total = Counter(
    "invoices_issued_total",
    "Invoices issued",
    labelnames=["currency"],
)

# Gateway latency
gateway_request_seconds = Histogram(
    "gateway_request_seconds",
    "Latency of outbound payment gateway calls",
    labelnames=["gateway", "operation"],
)
