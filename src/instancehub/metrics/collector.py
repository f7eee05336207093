"""Prometheus metrics definitions for the instance hub.

Hub metrics track orchestration-level work:
- Instance lifecycle operations (create/start/stop/restart/delete)
- Reconciliation cycles
- Isolated database provisioning
"""

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Histogram Buckets
# =============================================================================
# Reconcile cycles walk the in-memory registry (1ms ~ 10s)
_BUCKETS_FAST = (
    0.001, 0.002, 0.005, 0.01, 0.02,
    0.05, 0.1, 0.2, 0.5, 1,
    2, 5, 10,
)  # 13 buckets

# Lifecycle and provisioning touch disk, subprocesses or a database server (10ms ~ 120s)
_BUCKETS_SLOW = (
    0.01, 0.02, 0.05, 0.1, 0.2,
    0.5, 1, 2, 5, 10,
    30, 60, 120,
)  # 13 buckets

# =============================================================================
# Instance Metrics
# =============================================================================

INSTANCES_BY_STATUS = Gauge(
    "instancehub_instances",
    "Number of registered instances by status",
    ["status"],  # stopped, starting, running, stopping, error, restarting
)

INSTANCE_OPERATIONS = Counter(
    "instancehub_instance_operations_total",
    "Total instance lifecycle operations",
    ["operation", "result"],  # result: success, error
)

INSTANCE_OPERATION_DURATION = Histogram(
    "instancehub_instance_operation_duration_seconds",
    "Duration of instance lifecycle operations",
    ["operation"],
    buckets=_BUCKETS_SLOW,
)

# =============================================================================
# Reconciliation Metrics
# =============================================================================

RECONCILE_DURATION = Histogram(
    "instancehub_reconcile_duration_seconds",
    "Duration of one reconciliation cycle",
    buckets=_BUCKETS_FAST,
)

RECONCILE_TRANSITIONS = Counter(
    "instancehub_reconcile_transitions_total",
    "Status changes applied by reconciliation",
    ["to_status"],  # stopped, error
)

# =============================================================================
# Database Metrics
# =============================================================================

DATABASES_TOTAL = Gauge(
    "instancehub_databases_total",
    "Number of tracked isolated databases",
)

DATABASE_OPERATIONS = Counter(
    "instancehub_database_operations_total",
    "Total isolated database operations",
    ["operation", "result"],  # create, delete, backup, restore
)

DATABASE_PROVISION_DURATION = Histogram(
    "instancehub_database_provision_duration_seconds",
    "Duration of isolated database provisioning",
    ["backend"],  # sqlite, postgres
    buckets=_BUCKETS_SLOW,
)


# =============================================================================
# Metric Initialization
# =============================================================================

_OPERATIONS = ["create", "start", "stop", "restart", "delete"]


def _init_metrics() -> None:
    """Initialize labeled metrics with zero values."""
    for op in _OPERATIONS:
        INSTANCE_OPERATION_DURATION.labels(operation=op)
        INSTANCE_OPERATIONS.labels(operation=op, result="success")
        INSTANCE_OPERATIONS.labels(operation=op, result="error")

    for status in ["stopped", "error"]:
        RECONCILE_TRANSITIONS.labels(to_status=status)

    for op in ["create", "delete", "backup", "restore"]:
        DATABASE_OPERATIONS.labels(operation=op, result="success")
        DATABASE_OPERATIONS.labels(operation=op, result="error")

    for backend in ["sqlite", "postgres"]:
        DATABASE_PROVISION_DURATION.labels(backend=backend)


_init_metrics()
