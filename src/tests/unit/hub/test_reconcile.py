"""Unit tests for reconciliation."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from instancehub.api.errors import DatabaseNotFoundError, InstanceNotFoundError, ProcessError
from instancehub.instances.manager import InstanceManager
from instancehub.instances.models import InstanceStatus
from instancehub.instances.reconciler import Reconciler
from instancehub.isolation.database import DatabaseIsolationManager
from instancehub.isolation.process import ProcessStatus


class TestReconcile:
    """Tests for InstanceManager.reconcile."""

    async def test_running_refreshes_pid_and_last_seen(
        self, manager: InstanceManager, mock_processes: AsyncMock, clock
    ) -> None:
        created = await manager.create_instance("Alice")
        started = await manager.start_instance(created.id)
        mock_processes.records[created.id].pid = 9999
        clock.advance(30)

        await manager.reconcile()

        instance = await manager.get_instance(created.id)
        assert instance.status == InstanceStatus.RUNNING
        assert instance.pid == 9999
        assert instance.last_seen > started.last_seen

    @pytest.mark.parametrize(
        ("process_status", "expected"),
        [
            (ProcessStatus.STOPPED, InstanceStatus.STOPPED),
            (ProcessStatus.CRASHED, InstanceStatus.ERROR),
            (ProcessStatus.ERROR, InstanceStatus.ERROR),
        ],
    )
    async def test_status_mapping(
        self,
        manager: InstanceManager,
        mock_processes: AsyncMock,
        process_status: ProcessStatus,
        expected: InstanceStatus,
    ) -> None:
        created = await manager.create_instance("Alice")
        await manager.start_instance(created.id)
        mock_processes.records[created.id].status = process_status

        await manager.reconcile()

        instance = await manager.get_instance(created.id)
        assert instance.status == expected
        assert instance.pid == 0

    async def test_transient_status_left_alone(
        self, manager: InstanceManager, mock_processes: AsyncMock
    ) -> None:
        created = await manager.create_instance("Alice")
        started = await manager.start_instance(created.id)
        mock_processes.records[created.id].status = ProcessStatus.STARTING

        await manager.reconcile()

        assert await manager.get_instance(created.id) == started

    async def test_missing_record_marks_error(
        self, manager: InstanceManager, mock_processes: AsyncMock
    ) -> None:
        created = await manager.create_instance("Alice")
        await manager.start_instance(created.id)
        del mock_processes.records[created.id]

        await manager.reconcile()

        instance = await manager.get_instance(created.id)
        assert instance.status == InstanceStatus.ERROR
        assert instance.pid == 0

    async def test_stopped_instances_not_queried(
        self, manager: InstanceManager, mock_processes: AsyncMock
    ) -> None:
        await manager.create_instance("Alice")

        await manager.reconcile()

        mock_processes.get_process.assert_not_called()

    async def test_failure_does_not_abort_cycle(
        self, manager: InstanceManager, mock_processes: AsyncMock
    ) -> None:
        """A lookup failure on one instance still reconciles the others."""
        a = await manager.create_instance("a")
        b = await manager.create_instance("b")
        await manager.start_instance(a.id)
        await manager.start_instance(b.id)
        mock_processes.records[b.id].status = ProcessStatus.CRASHED
        original = mock_processes.get_process.side_effect

        async def flaky(process_id: str):
            if process_id == a.id:
                raise RuntimeError("supervisor unreachable")
            return await original(process_id)

        mock_processes.get_process.side_effect = flaky

        await manager.reconcile()

        assert (await manager.get_instance(a.id)).status == InstanceStatus.ERROR
        assert (await manager.get_instance(b.id)).status == InstanceStatus.ERROR

    async def test_auto_restarted_instance_recovers(
        self, manager: InstanceManager, mock_processes: AsyncMock
    ) -> None:
        """A crash caught mid auto-restart is corrected once the worker is back."""
        created = await manager.create_instance("Alice")
        await manager.start_instance(created.id)
        mock_processes.records[created.id].status = ProcessStatus.CRASHED
        await manager.reconcile()
        assert (await manager.get_instance(created.id)).status == InstanceStatus.ERROR

        mock_processes.records[created.id].status = ProcessStatus.RUNNING
        mock_processes.records[created.id].pid = 5005
        await manager.reconcile()

        instance = await manager.get_instance(created.id)
        assert instance.status == InstanceStatus.RUNNING
        assert instance.pid == 5005

    async def test_error_without_record_stays_error(
        self, manager: InstanceManager, mock_processes: AsyncMock
    ) -> None:
        created = await manager.create_instance("Alice")
        await manager.start_instance(created.id)
        del mock_processes.records[created.id]
        await manager.reconcile()

        await manager.reconcile()

        instance = await manager.get_instance(created.id)
        assert instance.status == InstanceStatus.ERROR
        assert instance.pid == 0

    async def test_failed_restart_corrected(
        self, manager: InstanceManager, mock_processes: AsyncMock
    ) -> None:
        """An instance left restarting picks up the real process status."""
        created = await manager.create_instance("Alice")
        await manager.start_instance(created.id)
        mock_processes.restart_process.side_effect = ProcessError("spawn failed")
        with pytest.raises(ProcessError):
            await manager.restart_instance(created.id)
        mock_processes.records[created.id].status = ProcessStatus.STOPPED

        await manager.reconcile()

        assert (await manager.get_instance(created.id)).status == InstanceStatus.STOPPED


class TestOrdering:
    """Reconciliation serializes with lifecycle operations per instance."""

    async def test_reconcile_waits_for_start(
        self, manager: InstanceManager, mock_processes: AsyncMock
    ) -> None:
        a = await manager.create_instance("a")
        b = await manager.create_instance("b")
        await manager.start_instance(b.id)

        entered = asyncio.Event()
        release = asyncio.Event()
        original_start = mock_processes.start_process.side_effect
        lookups: list[str] = []
        original_get = mock_processes.get_process.side_effect

        async def gated_start(process_id: str) -> None:
            entered.set()
            await release.wait()
            await original_start(process_id)

        async def counting_get(process_id: str):
            lookups.append(process_id)
            return await original_get(process_id)

        mock_processes.start_process.side_effect = gated_start
        mock_processes.get_process.side_effect = counting_get

        start_task = asyncio.create_task(manager.start_instance(a.id))
        await asyncio.wait_for(entered.wait(), timeout=1.0)
        reconcile_task = asyncio.create_task(manager.reconcile())

        # Other instances stay readable while a is mid-start
        other = await asyncio.wait_for(manager.get_instance(b.id), timeout=1.0)
        assert other.status == InstanceStatus.RUNNING
        await asyncio.sleep(0.05)
        assert not reconcile_task.done()

        release.set()
        started = await asyncio.wait_for(start_task, timeout=1.0)
        await asyncio.wait_for(reconcile_task, timeout=1.0)

        # Stale-record check and read-back by start, then one reconcile lookup
        # that saw the instance running rather than starting.
        assert lookups.count(a.id) == 3
        instance = await manager.get_instance(a.id)
        assert instance.status == InstanceStatus.RUNNING
        assert instance.pid == started.pid


class TestReconciler:
    """Tests for the background loop."""

    async def test_loop_calls_reconcile(self) -> None:
        manager = AsyncMock(spec=InstanceManager)
        reconciler = Reconciler(manager, interval=0.01)

        reconciler.start()
        await asyncio.sleep(0.1)
        await reconciler.stop()

        assert manager.reconcile.await_count >= 2
        assert reconciler.running is False

    async def test_loop_survives_errors(self) -> None:
        manager = AsyncMock(spec=InstanceManager)
        manager.reconcile.side_effect = RuntimeError("boom")
        reconciler = Reconciler(manager, interval=0.01)

        reconciler.start()
        await asyncio.sleep(0.1)
        assert reconciler.running is True
        await reconciler.stop()

        assert manager.reconcile.await_count >= 2

    async def test_stop_without_start(self) -> None:
        reconciler = Reconciler(AsyncMock(spec=InstanceManager), interval=1.0)

        await reconciler.stop()


class TestEndToEnd:
    """Create, start, crash, reconcile, delete."""

    async def test_alice_lifecycle(
        self,
        manager: InstanceManager,
        mock_processes: AsyncMock,
        databases: DatabaseIsolationManager,
    ) -> None:
        alice = await manager.create_instance("Alice", "+15550001")
        assert (await manager.get_instance(alice.id)).status == InstanceStatus.STOPPED
        record = await databases.get_isolated_database(alice.id)
        assert record.instance_id == alice.id

        running = await manager.start_instance(alice.id)
        assert running.status == InstanceStatus.RUNNING
        assert running.pid > 0

        mock_processes.records[alice.id].status = ProcessStatus.CRASHED
        mock_processes.records[alice.id].pid = 0
        await manager.reconcile()
        crashed = await manager.get_instance(alice.id)
        assert crashed.status == InstanceStatus.ERROR
        assert crashed.pid == 0

        await manager.delete_instance(alice.id)
        assert alice.id not in [instance.id for instance in await manager.list_instances()]
        assert alice.id not in [db.instance_id for db in await databases.list_databases()]
        with pytest.raises(InstanceNotFoundError):
            await manager.get_instance(alice.id)
        with pytest.raises(DatabaseNotFoundError):
            await databases.get_isolated_database(alice.id)

