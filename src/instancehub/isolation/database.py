"""Database isolation manager.

Provisions and destroys one exclusive primary database and one exclusive
key-material database per instance over a backend fixed at construction.

Locking:
- One reader/writer lock over the record map (create/delete exclusive)
- One reader/writer lock per record (backup shared, restore exclusive)
This manager never calls back into the instance manager.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from instancehub.api.errors import (
    AlreadyExistsError,
    BackupUnsupportedError,
    DatabaseNotFoundError,
    ProvisioningError,
)
from instancehub.config import DatabaseConfig
from instancehub.isolation.backends import (
    DatabaseBackend,
    IsolatedDatabase,
    PostgresBackend,
    SqliteBackend,
    StorageBackend,
)
from instancehub.isolation.lock import RWLock
from instancehub.isolation.schema import bootstrap_schema
from instancehub.logging_schema import LogEvent
from instancehub.metrics import DATABASE_OPERATIONS, DATABASE_PROVISION_DURATION, DATABASES_TOTAL

logger = logging.getLogger(__name__)


@dataclass
class _Tracked:
    record: IsolatedDatabase
    lock: RWLock = field(default_factory=RWLock)
    primary: AsyncEngine | None = None
    keys: AsyncEngine | None = None

    def snapshot(self) -> IsolatedDatabase:
        return self.record.model_copy(update={"connected": self.primary is not None})


class DatabaseIsolationManager:
    """Per-instance storage provisioning."""

    def __init__(self, backend: StorageBackend) -> None:
        self._backend = backend
        self._databases: dict[str, _Tracked] = {}
        self._lock = RWLock()

    @classmethod
    def from_config(cls, config: DatabaseConfig, base_path: Path) -> DatabaseIsolationManager:
        """Pick the backend from the configured URL."""
        options = {
            "primary_prefix": config.primary_prefix,
            "keys_prefix": config.keys_prefix,
            "echo": config.echo,
        }
        if config.is_postgres:
            logger.info("Using PostgreSQL for database isolation")
            return cls(PostgresBackend(config.url, **options))
        logger.info("Using SQLite for database isolation")
        return cls(SqliteBackend(base_path, **options))

    @property
    def backend(self) -> DatabaseBackend:
        return self._backend.kind

    async def create_isolated_database(self, instance_id: str) -> IsolatedDatabase:
        """Provision storage, open and ping both connections, bootstrap schema.

        Raises:
            AlreadyExistsError: If a record for instance_id is tracked.
            ProvisioningError: If any step fails. Nothing is registered.
        """
        async with self._lock.write():
            if instance_id in self._databases:
                raise AlreadyExistsError(f"Database for instance {instance_id} already exists")

            start = time.monotonic()
            tracked = _Tracked(record=self._backend.describe(instance_id))
            try:
                await self._backend.provision(tracked.record)
                await self._open(tracked)
            except (SQLAlchemyError, OSError) as e:
                DATABASE_OPERATIONS.labels(operation="create", result="error").inc()
                raise ProvisioningError(
                    f"Failed to create isolated database for {instance_id}: {e}"
                ) from e

            self._databases[instance_id] = tracked
            DATABASES_TOTAL.set(len(self._databases))

        DATABASE_PROVISION_DURATION.labels(backend=self.backend.value).observe(time.monotonic() - start)
        DATABASE_OPERATIONS.labels(operation="create", result="success").inc()
        logger.info(
            "Created isolated database",
            extra={
                "event": LogEvent.DATABASE_CREATED,
                "instance_id": instance_id,
                "backend": self.backend.value,
            },
        )
        return tracked.snapshot()

    async def load_isolated_database(self, instance_id: str) -> IsolatedDatabase:
        """Track the record of an already provisioned instance without connecting."""
        async with self._lock.write():
            tracked = self._databases.get(instance_id)
            if tracked is None:
                tracked = _Tracked(record=self._backend.describe(instance_id))
                self._databases[instance_id] = tracked
                DATABASES_TOTAL.set(len(self._databases))
            return tracked.snapshot()

    async def get_isolated_database(self, instance_id: str) -> IsolatedDatabase:
        async with self._lock.read():
            return self._require(instance_id).snapshot()

    async def list_databases(self) -> list[IsolatedDatabase]:
        async with self._lock.read():
            return [tracked.snapshot() for tracked in self._databases.values()]

    async def delete_isolated_database(self, instance_id: str) -> None:
        """Close connections, drop storage and forget the record.

        Storage removal is best effort; the record is removed regardless.

        Raises:
            DatabaseNotFoundError: If no record is tracked.
        """
        async with self._lock.write():
            tracked = self._require(instance_id)
            try:
                async with tracked.lock.write():
                    await self._close(tracked)
                    await self._backend.drop(tracked.record)
            finally:
                del self._databases[instance_id]
                DATABASES_TOTAL.set(len(self._databases))

        DATABASE_OPERATIONS.labels(operation="delete", result="success").inc()
        logger.info(
            "Deleted isolated database",
            extra={
                "event": LogEvent.DATABASE_DELETED,
                "instance_id": instance_id,
                "backend": self.backend.value,
            },
        )

    async def backup_database(self, instance_id: str, backup_path: str | Path) -> None:
        """Copy both storage files into the backup_path directory."""
        async with self._lock.read():
            tracked = self._require(instance_id)
        self._check_backup_support("Backup")
        async with tracked.lock.read():
            await self._backend.backup(tracked.record, Path(backup_path))

        DATABASE_OPERATIONS.labels(operation="backup", result="success").inc()
        logger.info(
            "Backed up database",
            extra={"event": LogEvent.DATABASE_BACKED_UP, "instance_id": instance_id, "path": str(backup_path)},
        )

    async def restore_database(self, instance_id: str, backup_path: str | Path) -> None:
        """Replace both storage files from backup_path, then reconnect.

        Connections are reopened even when the copy fails.
        """
        async with self._lock.read():
            tracked = self._require(instance_id)
        self._check_backup_support("Restore")
        async with tracked.lock.write():
            await self._close(tracked)
            try:
                await self._backend.restore(tracked.record, Path(backup_path))
            finally:
                await self._reopen(tracked)

        DATABASE_OPERATIONS.labels(operation="restore", result="success").inc()
        logger.info(
            "Restored database",
            extra={"event": LogEvent.DATABASE_RESTORED, "instance_id": instance_id, "path": str(backup_path)},
        )

    async def stop(self) -> None:
        """Close every open connection. Idempotent."""
        async with self._lock.write():
            for instance_id, tracked in self._databases.items():
                if tracked.primary is None and tracked.keys is None:
                    continue
                await self._close(tracked)
                logger.info(
                    "Closed database connections",
                    extra={"event": LogEvent.APP_STOPPED, "instance_id": instance_id},
                )
        logger.info("Database isolation manager stopped", extra={"event": LogEvent.APP_STOPPED})

    # =========================================================================
    # Internals
    # =========================================================================

    def _require(self, instance_id: str) -> _Tracked:
        tracked = self._databases.get(instance_id)
        if tracked is None:
            raise DatabaseNotFoundError(f"Database for instance {instance_id} not found")
        return tracked

    async def _open(self, tracked: _Tracked) -> None:
        """Open both engines, ping them and bootstrap schema; close both on failure."""
        primary, keys = self._backend.create_engines(tracked.record)
        try:
            for engine in (primary, keys):
                async with engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
            await bootstrap_schema(primary, keys)
        except BaseException:
            await primary.dispose()
            await keys.dispose()
            raise
        tracked.primary = primary
        tracked.keys = keys

    def _check_backup_support(self, operation: str) -> None:
        if not self._backend.supports_backup:
            raise BackupUnsupportedError(f"{operation} not supported for {self.backend.value} backend")

    async def _reopen(self, tracked: _Tracked) -> None:
        try:
            await self._open(tracked)
        except (SQLAlchemyError, OSError) as e:
            raise ProvisioningError(
                f"Failed to reinitialize database for {tracked.record.instance_id}: {e}"
            ) from e

    async def _close(self, tracked: _Tracked) -> None:
        for engine in (tracked.primary, tracked.keys):
            if engine is not None:
                await engine.dispose()
        tracked.primary = None
        tracked.keys = None
