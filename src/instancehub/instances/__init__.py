"""Instance registry and lifecycle."""

from instancehub.instances.manager import InstanceManager
from instancehub.instances.models import Instance, InstanceConfig, InstanceStats, InstanceStatus

__all__ = [
    "Instance",
    "InstanceConfig",
    "InstanceManager",
    "InstanceStats",
    "InstanceStatus",
]
