"""
Shared Prometheus Metrics for the Billing Engine
"""
from prometheus_client import Counter, Histogram

# Total scheduled job runs
SCHEDULER_JOB_RUNS = Counter(
    "billing_scheduler_job_runs_total",
    "Total number of scheduled billing job runs",
    ["job_name", "status"]
)

# Duration of scheduled jobs
SCHEDULER_JOB_DURATION = Histogram(
    "billing_scheduler_job_duration_seconds",
    "Duration of scheduled billing jobs in seconds",
    ["job_name"],
    buckets=[1, 5, 10, 30, 60, 120, 300, 600]
)

# Subscription state transitions written by the lifecycle engine
SUBSCRIPTION_TRANSITIONS = Counter(
    "billing_subscription_transitions_total",
    "Subscription state transitions applied",
    ["from_status", "to_status"]
)

# Per-item failures inside batch runs (skipped, retried next tick)
BILLING_ITEM_ERRORS = Counter(
    "billing_item_errors_total",
    "Subscriptions skipped because of an error during a batch run",
    ["job_name", "error_code"]
)

# Gateway notifications by reconcile outcome
PAYMENT_NOTIFICATIONS = Counter(
    "billing_payment_notifications_total",
    "Gateway payment notifications processed",
    ["outcome"]
)

# Outbound tenant notifications
NOTIFICATIONS_SENT = Counter(
    "billing_notifications_total",
    "Tenant notifications by kind and outcome",
    ["kind", "outcome"]
)
