"""Prometheus metrics module."""

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from instancehub.metrics.collector import (
    DATABASE_OPERATIONS,
    DATABASE_PROVISION_DURATION,
    DATABASES_TOTAL,
    INSTANCE_OPERATION_DURATION,
    INSTANCE_OPERATIONS,
    INSTANCES_BY_STATUS,
    RECONCILE_DURATION,
    RECONCILE_TRANSITIONS,
)

__all__ = [
    "DATABASE_OPERATIONS",
    "DATABASE_PROVISION_DURATION",
    "DATABASES_TOTAL",
    "INSTANCE_OPERATION_DURATION",
    "INSTANCE_OPERATIONS",
    "INSTANCES_BY_STATUS",
    "RECONCILE_DURATION",
    "RECONCILE_TRANSITIONS",
    "get_metrics_response",
]


def get_metrics_response() -> Response:
    """Render the default registry in Prometheus text format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
