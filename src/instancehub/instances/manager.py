"""Instance registry and lifecycle manager.

Owns the instance registry and drives both isolation collaborators:
- create: database provisioning -> config file -> registry
- start/stop/restart: process supervisor, mirrored PID/status
- reconcile: process status -> registry (one direction only)

Locking:
- Registry lock: reads shared, create/delete exclusive
- Per-instance lock: status, PID and timestamps
Lock order is always registry -> instance. start/stop/restart take the
registry lock only for lookup.

Callers only ever receive deep copies of Instance.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from collections import Counter
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from instancehub.api.errors import (
    AlreadyExistsError,
    AlreadyRunningError,
    HubError,
    InstanceNotFoundError,
    NoPortAvailableError,
    NotRunningError,
    PersistenceError,
    PortInUseError,
    ProcessError,
    ProvisioningError,
)
from instancehub.config import HubConfig
from instancehub.instances.models import (
    Instance,
    InstanceConfig,
    InstanceStats,
    InstanceStatus,
    ResourceUsage,
)
from instancehub.instances.naming import InstanceNaming
from instancehub.instances.reconciler import Reconciler
from instancehub.instances.store import RegistryStore
from instancehub.isolation.database import DatabaseIsolationManager
from instancehub.isolation.lock import RWLock
from instancehub.isolation.process import IsolationLimits, ProcessIsolationManager, ProcessStatus
from instancehub.logging_schema import LogEvent
from instancehub.metrics import (
    INSTANCE_OPERATION_DURATION,
    INSTANCE_OPERATIONS,
    INSTANCES_BY_STATUS,
    RECONCILE_DURATION,
    RECONCILE_TRANSITIONS,
)

logger = logging.getLogger(__name__)


@contextmanager
def _observe(operation: str) -> Iterator[None]:
    """Record duration and outcome of a lifecycle operation."""
    start = time.monotonic()
    try:
        yield
    except Exception:
        INSTANCE_OPERATIONS.labels(operation=operation, result="error").inc()
        raise
    finally:
        INSTANCE_OPERATION_DURATION.labels(operation=operation).observe(time.monotonic() - start)
    INSTANCE_OPERATIONS.labels(operation=operation, result="success").inc()


@dataclass
class _Managed:
    instance: Instance
    lock: RWLock = field(default_factory=RWLock)
    deleted: bool = False

    def snapshot(self) -> Instance:
        return self.instance.model_copy(deep=True)


class InstanceManager:
    """Create, run and tear down isolated worker instances."""

    def __init__(
        self,
        config: HubConfig,
        processes: ProcessIsolationManager,
        databases: DatabaseIsolationManager,
        *,
        store: RegistryStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._processes = processes
        self._databases = databases
        self._naming = InstanceNaming(config.instances.base_path, config.instances.registry_file)
        self._store = store or RegistryStore(self._naming.registry_path)
        self._limits = IsolationLimits.from_config(config.isolation)
        self._clock = clock or (lambda: datetime.now(UTC))

        self._instances: dict[str, _Managed] = {}
        self._lock = RWLock()
        self._reconciler = Reconciler(self, config.instances.reconcile_interval)
        self._stopped = False

    @property
    def naming(self) -> InstanceNaming:
        return self._naming

    @property
    def databases(self) -> DatabaseIsolationManager:
        return self._databases

    # =========================================================================
    # Lifecycle operations
    # =========================================================================

    async def create_instance(
        self,
        name: str,
        phone: str = "",
        config: InstanceConfig | None = None,
    ) -> Instance:
        """Register a new stopped instance with its own directory tree and database.

        A port of 0 is replaced with the lowest free port of the configured
        range. A failure after the directory tree or database exists leaves
        them in place.

        Raises:
            AlreadyExistsError: Generated ID already registered.
            PortInUseError: Explicit port held by another instance.
            NoPortAvailableError: Auto-allocation range exhausted.
            ProvisioningError: Directory or database creation failed.
            PersistenceError: Config or registry file could not be written.
        """
        config = (config or InstanceConfig()).model_copy(deep=True)

        with _observe("create"):
            async with self._lock.write():
                now = self._clock()
                instance_id = self._naming.instance_id(name, now)
                if instance_id in self._instances:
                    raise AlreadyExistsError(f"Instance already exists: {instance_id}")

                config.port = self._allocate_port(config.port)

                try:
                    await asyncio.to_thread(self._make_layout, instance_id)
                except OSError as e:
                    raise ProvisioningError(f"Failed to create instance directory: {e}") from e

                database = await self._databases.create_isolated_database(instance_id)
                if not config.db_uri:
                    config.db_uri = database.connection_uri
                if not config.db_keys_uri:
                    config.db_keys_uri = database.keys_uri

                instance = Instance(
                    id=instance_id,
                    name=name,
                    phone=phone,
                    status=InstanceStatus.STOPPED,
                    port=config.port,
                    working_dir=str(self._naming.working_dir(instance_id)),
                    config_path=str(self._naming.config_path(instance_id)),
                    log_path=str(self._naming.log_path(instance_id)),
                    created_at=now,
                    config=config,
                )
                await self._store.save_config(instance.config_path, config)

                managed = _Managed(instance=instance)
                self._instances[instance_id] = managed
                try:
                    await self._persist()
                except PersistenceError:
                    del self._instances[instance_id]
                    raise

                snapshot = managed.snapshot()

        self._publish_status_counts()
        logger.info(
            "Created instance",
            extra={
                "event": LogEvent.INSTANCE_CREATED,
                "instance_id": instance_id,
                "instance_name": name,
                "port": config.port,
            },
        )
        return snapshot

    async def start_instance(self, instance_id: str) -> Instance:
        """Spawn the worker process for an instance.

        Raises:
            InstanceNotFoundError: Unknown ID.
            AlreadyRunningError: Instance is running.
            ProcessError: No worker executable is configured, or the
                supervisor could not create or start the process.
        """
        managed = await self._lookup(instance_id)

        with _observe("start"):
            async with managed.lock.write():
                self._ensure_live(managed)
                instance = managed.instance
                if instance.status == InstanceStatus.RUNNING:
                    raise AlreadyRunningError(f"Instance is already running: {instance_id}")
                executable = self._executable()

                instance.status = InstanceStatus.STARTING
                logger.info(
                    "Starting instance",
                    extra={"event": LogEvent.STATE_CHANGED, "instance_id": instance_id},
                )

                try:
                    await self._discard_stale_process(instance_id)
                    await self._processes.create_process(
                        instance_id,
                        self._naming.process_name(instance.name),
                        executable,
                        self.build_args(instance.config),
                        self._limits,
                        environment=self.build_environment(instance),
                        working_dir=instance.working_dir,
                        log_path=instance.log_path,
                    )
                    await self._processes.start_process(instance_id)
                    info = await self._processes.get_process(instance_id)
                except Exception as e:
                    instance.status = InstanceStatus.ERROR
                    instance.pid = 0
                    logger.error(
                        "Failed to start instance",
                        extra={"event": LogEvent.INSTANCE_FAILED, "instance_id": instance_id, "error": str(e)},
                    )
                    raise ProcessError(f"Failed to start instance {instance_id}: {e}") from e

                now = self._clock()
                instance.pid = info.pid
                instance.status = InstanceStatus.RUNNING
                instance.started_at = now
                instance.last_seen = now
                snapshot = managed.snapshot()

        self._publish_status_counts()
        logger.info(
            "Started instance",
            extra={"event": LogEvent.INSTANCE_STARTED, "instance_id": instance_id, "pid": snapshot.pid},
        )
        return snapshot

    async def stop_instance(self, instance_id: str) -> Instance:
        """Stop a running instance. Supervisor errors are logged, not raised.

        Raises:
            InstanceNotFoundError: Unknown ID.
            NotRunningError: Instance is not running.
        """
        managed = await self._lookup(instance_id)

        with _observe("stop"):
            async with managed.lock.write():
                self._ensure_live(managed)
                await self._stop_locked(managed)
                snapshot = managed.snapshot()

        self._publish_status_counts()
        return snapshot

    async def restart_instance(self, instance_id: str) -> Instance:
        """Restart the worker process through the supervisor.

        On failure the status stays ``restarting`` until reconciliation
        reads the real process status.

        Raises:
            InstanceNotFoundError: Unknown ID.
            ProcessError: Supervisor could not restart the process.
        """
        managed = await self._lookup(instance_id)

        with _observe("restart"):
            async with managed.lock.write():
                self._ensure_live(managed)
                instance = managed.instance
                instance.status = InstanceStatus.RESTARTING
                logger.info(
                    "Restarting instance",
                    extra={"event": LogEvent.STATE_CHANGED, "instance_id": instance_id},
                )

                try:
                    await self._processes.restart_process(instance_id)
                    info = await self._processes.get_process(instance_id)
                except Exception as e:
                    logger.error(
                        "Failed to restart instance",
                        extra={"event": LogEvent.INSTANCE_FAILED, "instance_id": instance_id, "error": str(e)},
                    )
                    raise ProcessError(f"Failed to restart instance {instance_id}: {e}") from e

                now = self._clock()
                instance.pid = info.pid
                instance.status = InstanceStatus.RUNNING
                instance.started_at = now
                instance.last_seen = now
                snapshot = managed.snapshot()

        self._publish_status_counts()
        logger.info(
            "Restarted instance",
            extra={"event": LogEvent.INSTANCE_RESTARTED, "instance_id": instance_id, "pid": snapshot.pid},
        )
        return snapshot

    async def delete_instance(self, instance_id: str) -> None:
        """Tear down an instance and forget it.

        Every teardown step is best effort: failures are logged and the
        instance is removed from the registry regardless. The instance is
        unreachable as soon as teardown begins. Stop, settle and teardown run
        under the instance lock only; the registry lock is held just for the
        removal.

        Raises:
            InstanceNotFoundError: Unknown ID.
        """
        managed = await self._lookup(instance_id)

        with _observe("delete"):
            async with managed.lock.write():
                self._ensure_live(managed)
                managed.deleted = True
                instance = managed.instance
                if instance.status == InstanceStatus.RUNNING:
                    await self._stop_locked(managed)
                    await asyncio.sleep(self._config.instances.delete_settle_seconds)

                await self._teardown(instance)

            async with self._lock.write():
                del self._instances[instance_id]
                try:
                    await self._persist()
                except PersistenceError as e:
                    logger.error(
                        "Registry not persisted after delete",
                        extra={"event": LogEvent.PERSISTENCE_FAILED, "instance_id": instance_id, "error": str(e)},
                    )

        self._publish_status_counts()
        logger.info(
            "Deleted instance",
            extra={"event": LogEvent.INSTANCE_DELETED, "instance_id": instance_id},
        )

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_instance(self, instance_id: str) -> Instance:
        """Return a snapshot of one instance.

        Raises:
            InstanceNotFoundError: Unknown ID.
        """
        async with self._lock.read():
            managed = self._require(instance_id)
            self._ensure_live(managed)
            async with managed.lock.read():
                return managed.snapshot()

    async def list_instances(self) -> list[Instance]:
        """Return snapshots of every instance, oldest first."""
        snapshots = []
        async with self._lock.read():
            for managed in self._instances.values():
                if managed.deleted:
                    continue
                async with managed.lock.read():
                    snapshots.append(managed.snapshot())
        return sorted(snapshots, key=lambda instance: (instance.created_at, instance.id))

    async def get_stats(self) -> InstanceStats:
        stats = InstanceStats(last_updated=self._clock())
        by_status: Counter[InstanceStatus] = Counter()

        async with self._lock.read():
            for managed in self._instances.values():
                if managed.deleted:
                    continue
                async with managed.lock.read():
                    instance = managed.instance
                    by_status[instance.status] += 1
                    if instance.status == InstanceStatus.RUNNING and instance.pid > 0:
                        stats.resource_usage[instance.id] = ResourceUsage(pid=instance.pid)

        stats.total_instances = sum(by_status.values())
        stats.instances_by_status = dict(by_status)
        stats.running_instances = by_status[InstanceStatus.RUNNING]
        stats.stopped_instances = by_status[InstanceStatus.STOPPED]
        stats.error_instances = by_status[InstanceStatus.ERROR]
        return stats

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def reconcile(self) -> None:
        """Merge supervisor status into every running or restarting instance.

        Errored instances the supervisor has auto-restarted are picked up as
        running again. A lookup failure marks that instance as error and
        never aborts the cycle for the others.
        """
        start = time.monotonic()
        changed = 0

        async with self._lock.read():
            for managed in list(self._instances.values()):
                if managed.deleted:
                    continue
                try:
                    async with managed.lock.write():
                        if await self._reconcile_one(managed):
                            changed += 1
                except Exception as e:
                    logger.exception(
                        "Reconcile failed for instance",
                        extra={
                            "event": LogEvent.INSTANCE_FAILED,
                            "instance_id": managed.instance.id,
                            "error": str(e),
                        },
                    )

        duration = time.monotonic() - start
        RECONCILE_DURATION.observe(duration)
        self._publish_status_counts()

        duration_ms = duration * 1000
        if duration_ms > self._config.logging.slow_threshold_ms:
            logger.warning(
                "Reconcile slow",
                extra={
                    "event": LogEvent.RECONCILE_SLOW,
                    "duration_ms": round(duration_ms, 1),
                    "threshold_ms": self._config.logging.slow_threshold_ms,
                },
            )
        elif changed:
            logger.info(
                "Reconcile complete",
                extra={"event": LogEvent.RECONCILE_COMPLETE, "changed": changed, "duration_ms": round(duration_ms, 1)},
            )

    async def _reconcile_one(self, managed: _Managed) -> bool:
        """Apply supervisor status to one instance. Caller holds its write lock."""
        instance = managed.instance
        previous = instance.status
        if previous == InstanceStatus.ERROR:
            await self._recover(instance)
        elif previous not in (InstanceStatus.RUNNING, InstanceStatus.RESTARTING):
            return False
        else:
            await self._merge_process_status(instance)

        if instance.status == previous:
            return False

        RECONCILE_TRANSITIONS.labels(to_status=instance.status.value).inc()
        logger.info(
            "Instance status changed",
            extra={
                "event": LogEvent.STATE_CHANGED,
                "instance_id": instance.id,
                "from_status": previous.value,
                "to_status": instance.status.value,
            },
        )
        return True

    async def _merge_process_status(self, instance: Instance) -> None:
        try:
            info = await self._processes.get_process(instance.id)
        except Exception as e:
            logger.warning(
                "Process lookup failed",
                extra={"event": LogEvent.STATE_CHANGED, "instance_id": instance.id, "error": str(e)},
            )
            instance.status = InstanceStatus.ERROR
            instance.pid = 0
        else:
            match info.status:
                case ProcessStatus.RUNNING:
                    instance.status = InstanceStatus.RUNNING
                    instance.pid = info.pid
                    instance.last_seen = self._clock()
                case ProcessStatus.STOPPED:
                    instance.status = InstanceStatus.STOPPED
                    instance.pid = 0
                case ProcessStatus.CRASHED | ProcessStatus.ERROR:
                    instance.status = InstanceStatus.ERROR
                    instance.pid = 0

    async def _recover(self, instance: Instance) -> None:
        """Pick up an errored instance the supervisor auto-restarted."""
        try:
            info = await self._processes.get_process(instance.id)
        except ProcessError:
            return
        if info.status != ProcessStatus.RUNNING:
            return

        instance.status = InstanceStatus.RUNNING
        instance.pid = info.pid
        instance.last_seen = self._clock()

    # =========================================================================
    # Manager lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Reload the registry from disk and start the reconcile loop."""
        await asyncio.to_thread(self._naming.base_path.mkdir, parents=True, exist_ok=True)
        loaded = await self._store.load()

        async with self._lock.write():
            for instance in loaded:
                self._instances[instance.id] = _Managed(instance=instance)
                try:
                    await self._databases.load_isolated_database(instance.id)
                except HubError as e:
                    logger.warning(
                        "Failed to attach database record",
                        extra={"event": LogEvent.DB_ERROR, "instance_id": instance.id, "error": str(e)},
                    )

        self._publish_status_counts()
        logger.info(
            "Loaded instances",
            extra={"event": LogEvent.INSTANCES_LOADED, "count": len(loaded)},
        )
        self._reconciler.start()

    async def stop(self) -> None:
        """Stop the reconcile loop, every running instance and both collaborators.

        Idempotent.
        """
        if self._stopped:
            return
        self._stopped = True

        await self._reconciler.stop()

        async with self._lock.read():
            managed_list = list(self._instances.values())
        for managed in managed_list:
            if managed.deleted:
                continue
            async with managed.lock.write():
                if managed.instance.status == InstanceStatus.RUNNING:
                    await self._stop_locked(managed)

        await self._processes.stop()
        await self._databases.stop()
        logger.info("Instance manager stopped", extra={"event": LogEvent.APP_STOPPED})

    # =========================================================================
    # Launch arguments
    # =========================================================================

    def build_args(self, config: InstanceConfig) -> list[str]:
        """Worker command-line arguments derived from an InstanceConfig."""
        args = [self._config.worker.subcommand, "--port", str(config.port)]
        if config.debug:
            args += ["--debug", "true"]
        if config.os:
            args += ["--os", config.os]
        for credential in config.basic_auth:
            args += ["--basic-auth", credential]
        if config.base_path:
            args += ["--base-path", config.base_path]
        args += ["--db-uri", config.db_uri]
        if config.db_keys_uri:
            args += ["--db-keys-uri", config.db_keys_uri]
        if config.auto_reply:
            args += ["--autoreply", config.auto_reply]
        if config.auto_mark_read:
            args += ["--auto-mark-read", "true"]
        for webhook in config.webhooks:
            args += ["--webhook", webhook]
        if config.webhook_secret:
            args += ["--webhook-secret", config.webhook_secret]
        if not config.account_validation:
            args += ["--account-validation", "false"]
        return args

    def build_environment(self, instance: Instance) -> dict[str, str]:
        """Caller overlay plus the instance-scoped variables."""
        prefix = self._config.worker.env_prefix
        env = dict(instance.config.environment)
        env.update(
            {
                f"{prefix}ID": instance.id,
                f"{prefix}NAME": instance.name,
                f"{prefix}PHONE": instance.phone,
                f"{prefix}STORAGE_PATH": str(self._naming.storage_dir(instance.id)),
                f"{prefix}STATIC_PATH": str(self._naming.static_dir(instance.id)),
                f"{prefix}LOG_PATH": str(self._naming.log_dir(instance.id)),
            }
        )
        return env

    def _executable(self) -> str:
        executable = self._config.worker.executable
        if not executable:
            raise ProcessError("No worker executable configured; set HUB_WORKER_EXECUTABLE")
        return executable

    # =========================================================================
    # Internals
    # =========================================================================

    def _require(self, instance_id: str) -> _Managed:
        managed = self._instances.get(instance_id)
        if managed is None:
            raise InstanceNotFoundError(f"Instance not found: {instance_id}")
        return managed

    @staticmethod
    def _ensure_live(managed: _Managed) -> None:
        """Reject an instance whose delete is in progress. Caller holds its lock."""
        if managed.deleted:
            raise InstanceNotFoundError(f"Instance not found: {managed.instance.id}")

    async def _lookup(self, instance_id: str) -> _Managed:
        async with self._lock.read():
            return self._require(instance_id)

    def _allocate_port(self, requested: int) -> int:
        """Validate an explicit port or pick the lowest free one. Caller holds the registry lock."""
        held = {managed.instance.port for managed in self._instances.values()}
        if requested:
            if requested in held:
                raise PortInUseError(f"Port {requested} is already assigned to another instance")
            return requested

        base_port = self._config.instances.base_port
        max_port = self._config.instances.max_port
        for port in range(base_port, max_port + 1):
            if port not in held:
                return port
        raise NoPortAvailableError(f"No free port between {base_port} and {max_port}")

    def _make_layout(self, instance_id: str) -> None:
        for directory in self._naming.layout(instance_id):
            directory.mkdir(parents=True, exist_ok=True)

    async def _persist(self) -> None:
        """Rewrite the registry file. Caller holds the registry write lock."""
        await self._store.save(managed.instance for managed in self._instances.values())

    async def _discard_stale_process(self, instance_id: str) -> None:
        """Forget a process record left over from a previous run."""
        try:
            await self._processes.get_process(instance_id)
        except ProcessError:
            return
        await self._processes.delete_process(instance_id)

    async def _stop_locked(self, managed: _Managed) -> None:
        """Stop an instance. Caller holds its write lock."""
        instance = managed.instance
        if instance.status != InstanceStatus.RUNNING:
            raise NotRunningError(f"Instance is not running: {instance.id}")

        instance.status = InstanceStatus.STOPPING
        try:
            await self._processes.stop_process(instance.id)
        except Exception as e:
            logger.warning(
                "Failed to stop process",
                extra={"event": LogEvent.INSTANCE_FAILED, "instance_id": instance.id, "error": str(e)},
            )

        instance.status = InstanceStatus.STOPPED
        instance.pid = 0
        logger.info(
            "Stopped instance",
            extra={"event": LogEvent.INSTANCE_STOPPED, "instance_id": instance.id},
        )

    async def _teardown(self, instance: Instance) -> None:
        """Remove process record, database and directory tree. Never raises."""
        try:
            await self._processes.delete_process(instance.id)
        except Exception as e:
            logger.warning(
                "Failed to delete process record",
                extra={"event": LogEvent.CLEANUP_FAILED, "instance_id": instance.id, "error": str(e)},
            )

        try:
            await self._databases.delete_isolated_database(instance.id)
        except Exception as e:
            logger.warning(
                "Failed to delete isolated database",
                extra={"event": LogEvent.CLEANUP_FAILED, "instance_id": instance.id, "error": str(e)},
            )

        try:
            await asyncio.to_thread(shutil.rmtree, instance.working_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(
                "Failed to remove instance directory",
                extra={"event": LogEvent.CLEANUP_FAILED, "instance_id": instance.id, "error": str(e)},
            )

    def _publish_status_counts(self) -> None:
        counts = Counter(managed.instance.status for managed in self._instances.values())
        for status in InstanceStatus:
            INSTANCES_BY_STATUS.labels(status=status.value).set(counts[status])
