"""API v1 module."""

from instancehub.api.v1.databases import router as databases_router
from instancehub.api.v1.health import router as health_router
from instancehub.api.v1.instances import router as instances_router

__all__ = [
    "databases_router",
    "health_router",
    "instances_router",
]
