"""Prometheus metrics for monitoring and alerting."""

from prometheus_client import Counter, Gauge, Histogram

RUNNER_COUNT = Gauge(
    "github_runner_count",
    "Number of runners by status",
    ["status", "pool"]
)
RUNNER_OPERATIONS = Counter(
    "github_runner_operations_total",
    "Total runner operations",
    ["operation", "result", "isolation"]
)
SCALING_DECISIONS = Counter(
    "github_runner_scaling_decisions_total",
    "Total scaling decisions made",
    ["direction", "reason", "pool"]
)
RECONCILE_RUNS = Counter(
    "github_runner_reconcile_runs_total",
    "Reconciliation sweeps by outcome",
    ["result"]
)
RECONCILE_DURATION = Histogram(
    "github_runner_reconcile_duration_seconds",
    "Reconciliation sweep duration in seconds"
)
RECONCILE_CORRECTIONS = Counter(
    "github_runner_reconcile_corrections_total",
    "Corrections applied by reconciliation",
    ["kind"]
)
WEBHOOK_EVENTS = Counter(
    "github_runner_webhook_events_total",
    "Inbound webhook events",
    ["action", "result"]
)
SECURITY_EVENTS = Counter(
    "github_runner_security_events_total",
    "Security events detected",
    ["event_type", "severity"]
)
