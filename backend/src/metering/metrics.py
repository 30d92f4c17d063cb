"""Business metrics for Prometheus monitoring."""
from prometheus_client import Counter, Gauge

# Usage metrics
usage_events_total = Counter(
    "usage_events_total",
    "Total metered usage events",
    labelnames=["event_type", "region", "outcome"],  # outcome: allowed, rejected, included
)

credits_deducted_total = Counter(
    "credits_deducted_total",
    "Total deductions by balance drawn from",
    labelnames=["event_type", "balance"],  # balance: quota, credits
)

deduction_failures_total = Counter(
    "deduction_failures_total",
    "Deductions that could not be persisted",
)

# Recharge metrics
auto_recharges_total = Counter(
    "auto_recharges_total",
    "Automatic recharge attempts",
    labelnames=["status"],  # status: succeeded, failed, skipped
)

# Notification metrics
notification_attempts_total = Counter(
    "notification_attempts_total",
    "Outbound user notification attempts",
    labelnames=["status"],  # status: delivered, failed
)

notifications_exhausted_total = Counter(
    "notifications_exhausted_total",
    "Notifications that failed every retry attempt",
)

admin_alerts_total = Counter(
    "admin_alerts_total",
    "Admin alert outcomes",
    labelnames=["outcome"],  # outcome: sent, cooldown, opted_out, failed, disabled
)

# Background job metrics
background_jobs_total = Counter(
    "background_jobs_total",
    "Detached background jobs by outcome",
    labelnames=["job", "status"],
)

# Pool metrics
pool_available_gauge = Gauge(
    "pool_available_resources",
    "Available resources in the number pool",
    labelnames=["country"],
)

pool_provisioned_total = Counter(
    "pool_provisioned_total",
    "Pool resources provisioned",
    labelnames=["status"],  # status: succeeded, failed
)

pool_released_total = Counter(
    "pool_released_total",
    "Pool resources released at the provider",
    labelnames=["reason", "status"],  # reason: cancellation, cleanup
)
