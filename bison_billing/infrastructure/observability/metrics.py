"""Prometheus metrics for billing cycles, ledger contention, workload actions and alert delivery"""

from decimal import Decimal
from prometheus_client import Counter, Histogram

# Billing cycle metrics
cycle_duration_histogram = Histogram(
    "bison_billing_cycle_duration_seconds",
    "Billing cycle wall time",
    buckets=[0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 300.0],
)

entity_outcome_counter = Counter(
    "bison_billing_entity_outcomes_total",
    "Per-team billing outcomes",
    ["status"],  # charged | skipped | deferred | fetch_error | config_error | error
)

charged_amount_counter = Counter(
    "bison_billing_charged_amount_total",
    "Sum of committed charges",
)

ledger_conflict_counter = Counter(
    "bison_ledger_conflicts_total",
    "Version-check failures on ledger updates",
    ["operation"],  # charge | recharge | settings | auto_recharge | suspension
)

# Usage source metrics
usage_fetch_failures_counter = Counter(
    "bison_usage_fetch_failures_total",
    "Failed usage source queries",
)

# Workload controller metrics
workload_action_counter = Counter(
    "bison_workload_actions_total",
    "Suspend/resume calls to the workload controller",
    ["action", "result"],  # suspend|resume, ok|error
)

# Auto-recharge metrics
auto_recharge_counter = Counter(
    "bison_auto_recharges_total",
    "Executed auto-recharge transactions",
    ["schedule"],
)

# Alert metrics
alert_delivery_counter = Counter(
    "bison_alert_deliveries_total",
    "Alert delivery attempts per channel",
    ["channel_type", "result"],  # sent | error
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_outcome(status: str, charge: Decimal) -> None:
    """Record one team's cycle outcome"""
    entity_outcome_counter.labels(status=status).inc()
    if charge > 0:
        charged_amount_counter.inc(float(charge))
