"""Per-instance isolation: process supervision and storage provisioning."""

from instancehub.isolation.backends import IsolatedDatabase, PostgresBackend, SqliteBackend, StorageBackend
from instancehub.isolation.database import DatabaseIsolationManager
from instancehub.isolation.process import (
    IsolationLimits,
    ProcessInfo,
    ProcessIsolationManager,
    ProcessStatus,
)
from instancehub.isolation.supervisor import SubprocessIsolationManager

__all__ = [
    "DatabaseIsolationManager",
    "IsolatedDatabase",
    "IsolationLimits",
    "PostgresBackend",
    "ProcessInfo",
    "ProcessIsolationManager",
    "ProcessStatus",
    "SqliteBackend",
    "StorageBackend",
    "SubprocessIsolationManager",
]
