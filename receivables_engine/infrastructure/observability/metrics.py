"""Prometheus metrics for approval throughput, payment lifecycle, gateway and outbox health"""

from prometheus_client import Counter, Histogram

# Approval metrics
approval_action_counter = Counter(
    "receivables_approval_actions_total",
    "Approver decisions recorded",
    ["decision"],  # approve | reject
)

approval_outcome_counter = Counter(
    "receivables_approval_outcomes_total",
    "Approval chains reaching a terminal state",
    ["outcome"],  # approved | rejected | withdrawn
)

approval_policy_violation_counter = Counter(
    "receivables_approval_policy_violations_total",
    "Approver actions refused by the chain",
    ["reason"],
)

# Payment metrics
payment_originated_counter = Counter(
    "receivables_payments_originated_total",
    "Payments originated",
    ["kind"],  # initial | resubmission
)

payment_amount_bucket_counter = Counter(
    "receivables_payment_amount_bucket",
    "Originated payments by amount bucket",
    ["bucket"],
)

payment_transition_counter = Counter(
    "receivables_payment_transitions_total",
    "Payment status transitions",
    ["to_status"],
)

# Batch and gateway metrics
batch_submission_counter = Counter(
    "receivables_batch_submissions_total",
    "Batch submission attempts",
    ["outcome"],  # submitted | failed
)

gateway_latency_histogram = Histogram(
    "processor_submit_latency_seconds",
    "Payment processor batch submit response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

gateway_notification_counter = Counter(
    "gateway_notifications_total",
    "Inbound gateway notifications by kind and outcome",
    ["kind", "outcome"],
)

unknown_payment_counter = Counter(
    "gateway_unknown_payment_notifications_total",
    "Gateway notifications referencing unknown payment ids",
)

operational_alert_counter = Counter(
    "receivables_operational_alerts_total",
    "Alerts raised to the monitoring collaborator",
    ["alert"],
)

# Outbox and webhooks
event_delivery_counter = Counter(
    "receivables_event_deliveries_total",
    "Outbox event delivery attempts",
    ["event_type", "outcome"],  # delivered | retry | failed
)

webhook_latency_histogram = Histogram(
    "webhook_latency_seconds",
    "Outbound webhook response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

webhook_failure_counter = Counter(
    "webhook_failures_total",
    "Failed webhook deliveries",
    ["target"],
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_payment_originated(amount_cents: int, resubmission: bool) -> None:
    """Record origination volume and amount distribution"""
    payment_originated_counter.labels(kind="resubmission" if resubmission else "initial").inc()

    if amount_cents < 100_000:
        bucket = "<$1k"
    elif amount_cents < 1_000_000:
        bucket = "$1k-$10k"
    elif amount_cents < 10_000_000:
        bucket = "$10k-$100k"
    else:
        bucket = "$100k+"

    payment_amount_bucket_counter.labels(bucket=bucket).inc()
