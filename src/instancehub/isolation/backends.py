"""Storage backends for isolated databases.

Both backends share one contract: derive the per-instance record, create the
underlying storage, open engines, drop storage and (file backend only) copy
storage files for backup/restore.

Implementations:
- SqliteBackend: two database files inside the instance's storages/ directory
- PostgresBackend: two databases on a shared server, derived from a base URI
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import ClassVar

from pydantic import BaseModel
from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from instancehub.api.errors import BackupUnsupportedError, PersistenceError
from instancehub.logging_schema import LogEvent

logger = logging.getLogger(__name__)

_UNSAFE_IDENTIFIER = re.compile(r"[^a-z0-9_]")

# File names inside a backup directory
BACKUP_PRIMARY_FILE = "primary.db"
BACKUP_KEYS_FILE = "keys.db"


class DatabaseBackend(str, Enum):
    """Storage technology behind an isolated database."""

    SQLITE = "sqlite"
    POSTGRES = "postgres"


class IsolatedDatabase(BaseModel):
    """Storage provisioning record for one instance."""

    instance_id: str
    backend: DatabaseBackend

    # SQLite
    database_path: str | None = None
    keys_path: str | None = None

    # PostgreSQL
    database_name: str | None = None
    keys_database_name: str | None = None

    connection_uri: str
    keys_uri: str
    connected: bool = False


def sanitize_identifier(value: str) -> str:
    """Lowercase and replace every non [a-z0-9_] character with underscore."""
    return _UNSAFE_IDENTIFIER.sub("_", value.lower())


def build_database_uri(base_uri: str, database_name: str) -> str:
    """Substitute the database-name path segment of a server URI.

    >>> build_database_uri("postgres://u:p@host:5432/main?sslmode=disable", "tenant_7")
    'postgres://u:p@host:5432/tenant_7?sslmode=disable'
    >>> build_database_uri("postgres://u:p@host:5432/main", "tenant_7")
    'postgres://u:p@host:5432/tenant_7'
    """
    head, sep, query = base_uri.partition("?")
    scheme, has_scheme, rest = head.partition("://")
    if not has_scheme:
        scheme, rest = "", head

    if "/" in rest:
        rest = rest.rsplit("/", 1)[0] + "/" + database_name
    else:
        rest = rest + "/" + database_name

    uri = f"{scheme}://{rest}" if has_scheme else rest
    return f"{uri}?{query}" if sep else uri


class StorageBackend(ABC):
    """Contract shared by the storage backends."""

    kind: ClassVar[DatabaseBackend]
    supports_backup: ClassVar[bool] = False

    def __init__(self, primary_prefix: str = "instance", keys_prefix: str = "keys", echo: bool = False) -> None:
        self._primary_prefix = primary_prefix
        self._keys_prefix = keys_prefix
        self._echo = echo

    @abstractmethod
    def describe(self, instance_id: str) -> IsolatedDatabase:
        """Derive the deterministic record for an instance. No I/O."""
        ...

    @abstractmethod
    async def provision(self, record: IsolatedDatabase) -> None:
        """Create the underlying storage if it does not exist."""
        ...

    @abstractmethod
    def create_engines(self, record: IsolatedDatabase) -> tuple[AsyncEngine, AsyncEngine]:
        """Open (lazily) primary and key-material engines."""
        ...

    @abstractmethod
    async def drop(self, record: IsolatedDatabase) -> None:
        """Remove the underlying storage. Best effort, logs failures."""
        ...

    async def backup(self, record: IsolatedDatabase, destination: Path) -> None:
        raise BackupUnsupportedError(f"Backup not supported for {self.kind.value} backend")

    async def restore(self, record: IsolatedDatabase, source: Path) -> None:
        raise BackupUnsupportedError(f"Restore not supported for {self.kind.value} backend")


class SqliteBackend(StorageBackend):
    """Embedded-file backend: one primary and one key-material file per instance."""

    kind = DatabaseBackend.SQLITE
    supports_backup = True

    def __init__(self, base_path: Path, **kwargs) -> None:
        super().__init__(**kwargs)
        self._base_path = Path(base_path)

    def storage_dir(self, instance_id: str) -> Path:
        return self._base_path / instance_id / "storages"

    def describe(self, instance_id: str) -> IsolatedDatabase:
        storage_dir = self.storage_dir(instance_id)
        primary = storage_dir / f"{self._primary_prefix}_{instance_id}.db"
        keys = storage_dir / f"{self._keys_prefix}_{instance_id}.db"
        return IsolatedDatabase(
            instance_id=instance_id,
            backend=self.kind,
            database_path=str(primary),
            keys_path=str(keys),
            connection_uri=f"file:{primary}?_foreign_keys=on",
            keys_uri=f"file:{keys}?_foreign_keys=on",
        )

    async def provision(self, record: IsolatedDatabase) -> None:
        self.storage_dir(record.instance_id).mkdir(parents=True, exist_ok=True)

    def create_engines(self, record: IsolatedDatabase) -> tuple[AsyncEngine, AsyncEngine]:
        return self._engine(record.database_path), self._engine(record.keys_path)

    def _engine(self, path: str | None) -> AsyncEngine:
        engine = create_async_engine(f"sqlite+aiosqlite:///{path}", echo=self._echo)

        @event.listens_for(engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    async def drop(self, record: IsolatedDatabase) -> None:
        for path in (record.database_path, record.keys_path):
            if path is None:
                continue
            try:
                Path(path).unlink(missing_ok=True)
            except OSError as e:
                logger.warning(
                    "Failed to remove database file",
                    extra={
                        "event": LogEvent.CLEANUP_FAILED,
                        "instance_id": record.instance_id,
                        "path": path,
                        "error": str(e),
                    },
                )

    async def backup(self, record: IsolatedDatabase, destination: Path) -> None:
        try:
            destination.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.copyfile, record.database_path, destination / BACKUP_PRIMARY_FILE)
            await asyncio.to_thread(shutil.copyfile, record.keys_path, destination / BACKUP_KEYS_FILE)
        except OSError as e:
            raise PersistenceError(f"Failed to back up database for {record.instance_id}: {e}") from e

    async def restore(self, record: IsolatedDatabase, source: Path) -> None:
        try:
            await asyncio.to_thread(shutil.copyfile, source / BACKUP_PRIMARY_FILE, record.database_path)
            await asyncio.to_thread(shutil.copyfile, source / BACKUP_KEYS_FILE, record.keys_path)
        except OSError as e:
            raise PersistenceError(f"Failed to restore database for {record.instance_id}: {e}") from e


class PostgresBackend(StorageBackend):
    """Networked backend: per-instance databases on one shared server."""

    kind = DatabaseBackend.POSTGRES

    def __init__(self, base_uri: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self._base_uri = base_uri

    def describe(self, instance_id: str) -> IsolatedDatabase:
        token = sanitize_identifier(instance_id)
        database_name = f"{self._primary_prefix}_{token}"
        keys_database_name = f"{self._keys_prefix}_{token}"
        return IsolatedDatabase(
            instance_id=instance_id,
            backend=self.kind,
            database_name=database_name,
            keys_database_name=keys_database_name,
            connection_uri=build_database_uri(self._base_uri, database_name),
            keys_uri=build_database_uri(self._base_uri, keys_database_name),
        )

    @staticmethod
    def engine_url(uri: str) -> str:
        """Convert a libpq-style URI into an asyncpg SQLAlchemy URL."""
        url = make_url(uri).set(drivername="postgresql+asyncpg")
        sslmode = url.query.get("sslmode")
        if sslmode is not None:
            url = url.difference_update_query(["sslmode"]).update_query_dict({"ssl": sslmode})
        return url.render_as_string(hide_password=False)

    def _admin_engine(self) -> AsyncEngine:
        return create_async_engine(
            self.engine_url(self._base_uri),
            isolation_level="AUTOCOMMIT",
            echo=self._echo,
        )

    async def provision(self, record: IsolatedDatabase) -> None:
        admin = self._admin_engine()
        try:
            async with admin.connect() as conn:
                quote = conn.dialect.identifier_preparer.quote_identifier
                for name in (record.database_name, record.keys_database_name):
                    exists = await conn.scalar(
                        text("SELECT 1 FROM pg_database WHERE datname = :name"),
                        {"name": name},
                    )
                    if exists:
                        continue
                    await conn.execute(text(f"CREATE DATABASE {quote(name)}"))
                    logger.info(
                        "Created PostgreSQL database",
                        extra={"event": LogEvent.DATABASE_CREATED, "database": name},
                    )
        finally:
            await admin.dispose()

    def create_engines(self, record: IsolatedDatabase) -> tuple[AsyncEngine, AsyncEngine]:
        return (
            create_async_engine(self.engine_url(record.connection_uri), echo=self._echo, pool_pre_ping=True),
            create_async_engine(self.engine_url(record.keys_uri), echo=self._echo, pool_pre_ping=True),
        )

    async def drop(self, record: IsolatedDatabase) -> None:
        admin = self._admin_engine()
        try:
            async with admin.connect() as conn:
                quote = conn.dialect.identifier_preparer.quote_identifier
                for name in (record.database_name, record.keys_database_name):
                    await self._drop_one(conn, quote, record.instance_id, name)
        except (SQLAlchemyError, OSError) as e:
            logger.warning(
                "Failed to connect for database drop",
                extra={"event": LogEvent.DB_ERROR, "instance_id": record.instance_id, "error": str(e)},
            )
        finally:
            await admin.dispose()

    async def _drop_one(self, conn, quote, instance_id: str, name: str | None) -> None:
        if not name:
            return
        try:
            await conn.execute(
                text(
                    "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                    "WHERE datname = :name AND pid <> pg_backend_pid()"
                ),
                {"name": name},
            )
        except SQLAlchemyError as e:
            logger.warning(
                "Failed to terminate connections",
                extra={"event": LogEvent.DB_ERROR, "database": name, "error": str(e)},
            )

        try:
            await conn.execute(text(f"DROP DATABASE IF EXISTS {quote(name)}"))
            logger.info(
                "Dropped PostgreSQL database",
                extra={"event": LogEvent.DATABASE_DELETED, "instance_id": instance_id, "database": name},
            )
        except SQLAlchemyError as e:
            logger.warning(
                "Failed to drop database",
                extra={"event": LogEvent.DB_ERROR, "database": name, "error": str(e)},
            )
