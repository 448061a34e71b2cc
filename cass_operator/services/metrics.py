"""
Prometheus metrics for reconciliation passes and rolling operations.

Provides observability into the control loop.
"""
from prometheus_client import Counter, Histogram, Gauge

# Pass metrics
reconcile_total = Counter(
    "cass_operator_reconcile_total",
    "Total number of reconciliation passes",
    ["namespace", "datacenter", "result"],
)

reconcile_duration_seconds = Histogram(
    "cass_operator_reconcile_duration_seconds",
    "Time spent in one reconciliation pass",
    ["namespace", "datacenter"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
)

reconcile_errors_total = Counter(
    "cass_operator_reconcile_errors_total",
    "Total failed reconciliation passes by error type",
    ["namespace", "datacenter", "error_type"],
)

# Operation metrics
operation_step_total = Counter(
    "cass_operator_operation_step_total",
    "Total single-node steps executed",
    ["kind", "phase"],
)

operation_total = Counter(
    "cass_operator_operation_total",
    "Total operations finished",
    ["kind", "status"],
)

# Datacenter gauges
datacenter_ready = Gauge(
    "cass_operator_datacenter_ready",
    "Whether the datacenter is Ready",
    ["namespace", "datacenter"],
)

datacenter_nodes = Gauge(
    "cass_operator_datacenter_nodes",
    "Observed node slots by state",
    ["namespace", "datacenter", "state"],
)


def record_reconcile(namespace: str, datacenter: str, result: str, duration_seconds: float):
    """Record a finished pass."""
    reconcile_total.labels(namespace=namespace, datacenter=datacenter, result=result).inc()
    reconcile_duration_seconds.labels(namespace=namespace, datacenter=datacenter).observe(
        duration_seconds
    )


def record_reconcile_error(namespace: str, datacenter: str, error_type: str):
    """Record a failed pass."""
    reconcile_errors_total.labels(
        namespace=namespace, datacenter=datacenter, error_type=error_type
    ).inc()


def record_operation_step(kind: str, phase: str):
    """Record one sequencer step."""
    operation_step_total.labels(kind=kind, phase=phase).inc()


def record_operation_complete(kind: str, status: str):
    """Record an operation reaching a terminal state."""
    operation_total.labels(kind=kind, status=status).inc()


def set_datacenter_ready(namespace: str, datacenter: str, ready: bool):
    datacenter_ready.labels(namespace=namespace, datacenter=datacenter).set(1 if ready else 0)


def set_datacenter_nodes(namespace: str, datacenter: str, counts: dict):
    """Set node counts per state."""
    for state, count in counts.items():
        datacenter_nodes.labels(namespace=namespace, datacenter=datacenter, state=state).set(count)
