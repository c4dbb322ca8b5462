"""
Operational metrics for the billing lifecycle.

Prometheus counters for webhook outcomes, throttle decisions and sweeper
transitions, exposed on ``/metrics``.
"""

from prometheus_client import Counter, Histogram

WEBHOOK_OUTCOMES = Counter(
    "billing_webhook_outcomes_total",
    "Processed gateway webhooks by outcome",
    ["outcome"],
)

WEBHOOK_REJECTIONS = Counter(
    "billing_webhook_rejections_total",
    "Rejected gateway webhooks by error code",
    ["code"],
)

WEBHOOK_PROCESSING_DURATION = Histogram(
    "billing_webhook_processing_seconds",
    "End-to-end webhook pipeline latency",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)

THROTTLE_DECISIONS = Counter(
    "billing_throttle_decisions_total",
    "Delivery throttle decisions",
    ["scope", "decision"],
)

LIFECYCLE_TRANSITIONS = Counter(
    "billing_lifecycle_transitions_total",
    "Applied subscription lifecycle transitions",
    ["transition", "driver"],
)

NOTIFICATIONS_DISPATCHED = Counter(
    "billing_notifications_total",
    "Best-effort operator and customer notifications",
    ["channel", "status"],
)

API_ERRORS_TOTAL = Counter(
    "billing_api_errors_total",
    "Errors returned by the HTTP surface",
    ["path", "method", "status_code"],
)
