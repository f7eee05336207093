"""Fixtures for hub unit tests."""

import itertools
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from instancehub.api.errors import ProcessError
from instancehub.config import HubConfig, InstancesConfig, IsolationConfig, WorkerConfig
from instancehub.instances.manager import InstanceManager
from instancehub.isolation.backends import SqliteBackend
from instancehub.isolation.database import DatabaseIsolationManager
from instancehub.isolation.process import (
    IsolationLimits,
    ProcessInfo,
    ProcessIsolationManager,
    ProcessStatus,
)


class FakeClock:
    """Deterministic UTC clock; advance() moves it forward."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 1, 1, 12, 0, 0, tzinfo=UTC))


@pytest.fixture
def base_path(tmp_path: Path) -> Path:
    return tmp_path / "instances"


@pytest.fixture
def hub_config(base_path: Path) -> HubConfig:
    """HubConfig rooted in tmp_path with no waits."""
    return HubConfig(
        instances=InstancesConfig(
            base_path=base_path,
            base_port=3001,
            max_port=3999,
            reconcile_interval=3600.0,
            delete_settle_seconds=0.0,
        ),
        isolation=IsolationConfig(
            enable_resource_limits=False,
            restart_delay_seconds=0.0,
            stop_grace_seconds=1.0,
        ),
        worker=WorkerConfig(executable="/usr/local/bin/worker"),
    )


@pytest.fixture
def mock_processes() -> AsyncMock:
    """ProcessIsolationManager mock that remembers created processes.

    ``mock.records`` maps process ID to the ProcessInfo the fake hands out;
    tests flip ``records[id].status`` to simulate crashes.
    """
    records: dict[str, ProcessInfo] = {}
    pids = itertools.count(4001)

    def require(process_id: str) -> ProcessInfo:
        if process_id not in records:
            raise ProcessError(f"Process not found: {process_id}")
        return records[process_id]

    async def create_process(
        process_id: str,
        name: str,
        executable: str,
        args: list[str],
        limits: IsolationLimits,
        *,
        environment: dict[str, str] | None = None,
        working_dir: str | None = None,
        log_path: str | None = None,
    ) -> ProcessInfo:
        if process_id in records:
            raise ProcessError(f"Process already exists: {process_id}")
        records[process_id] = ProcessInfo(
            id=process_id,
            name=name,
            command=executable,
            args=args,
            working_dir=working_dir or "",
            environment=environment or {},
            log_path=log_path or "",
            limits=limits,
        )
        return records[process_id].model_copy(deep=True)

    async def start_process(process_id: str) -> None:
        info = require(process_id)
        info.pid = next(pids)
        info.status = ProcessStatus.RUNNING

    async def stop_process(process_id: str) -> None:
        info = require(process_id)
        info.pid = 0
        info.status = ProcessStatus.STOPPED

    async def restart_process(process_id: str) -> None:
        info = require(process_id)
        info.restarts += 1
        info.pid = next(pids)
        info.status = ProcessStatus.RUNNING

    async def get_process(process_id: str) -> ProcessInfo:
        return require(process_id).model_copy(deep=True)

    async def delete_process(process_id: str) -> None:
        require(process_id)
        del records[process_id]

    api = AsyncMock(spec=ProcessIsolationManager)
    api.create_process.side_effect = create_process
    api.start_process.side_effect = start_process
    api.stop_process.side_effect = stop_process
    api.restart_process.side_effect = restart_process
    api.get_process.side_effect = get_process
    api.delete_process.side_effect = delete_process
    api.list_processes.side_effect = lambda: [info.model_copy(deep=True) for info in records.values()]
    api.stop = AsyncMock()
    api.records = records
    return api


@pytest.fixture
async def databases(base_path: Path) -> DatabaseIsolationManager:
    """Real SQLite-backed DatabaseIsolationManager in tmp_path."""
    manager = DatabaseIsolationManager(SqliteBackend(base_path))
    yield manager
    await manager.stop()


@pytest.fixture
async def manager(
    hub_config: HubConfig,
    mock_processes: AsyncMock,
    databases: DatabaseIsolationManager,
    clock: FakeClock,
) -> InstanceManager:
    """InstanceManager over the fake supervisor and real SQLite storage."""
    manager = InstanceManager(hub_config, mock_processes, databases, clock=clock)
    yield manager
    await manager.stop()
