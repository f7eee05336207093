"""Process isolation interface consumed by the instance manager.

The manager treats the supervisor as a black box: it creates a process record,
starts/stops/restarts it and reads back ``ProcessInfo`` snapshots (status and
PID). Implementations own the OS process handles.

Implementations: SubprocessIsolationManager (isolation/supervisor.py)
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from instancehub.config import IsolationConfig


class ProcessStatus(str, Enum):
    """Lifecycle status reported by the supervisor."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED = "crashed"
    ERROR = "error"


class IsolationLimits(BaseModel):
    """Resource limits and supervision policy for one process."""

    enable_resource_limits: bool = True
    memory_limit_mb: int = 512
    cpu_limit_percent: float = 50.0
    timeout: float = 1800.0
    monitoring_interval: float = 10.0
    auto_restart: bool = True
    max_restarts: int = 3

    model_config = {"frozen": True}

    @classmethod
    def from_config(cls, config: IsolationConfig) -> "IsolationLimits":
        return cls(
            enable_resource_limits=config.enable_resource_limits,
            memory_limit_mb=config.memory_limit_mb,
            cpu_limit_percent=config.cpu_limit_percent,
            timeout=config.timeout,
            monitoring_interval=config.monitoring_interval,
            auto_restart=config.auto_restart,
            max_restarts=config.max_restarts,
        )


class ProcessInfo(BaseModel):
    """Snapshot of a supervised process."""

    id: str
    name: str
    command: str
    args: list[str] = Field(default_factory=list)
    working_dir: str
    environment: dict[str, str] = Field(default_factory=dict)
    pid: int = 0
    status: ProcessStatus = ProcessStatus.STOPPED
    started_at: datetime | None = None
    stopped_at: datetime | None = None
    exit_code: int | None = None
    log_path: str
    limits: IsolationLimits = Field(default_factory=IsolationLimits)
    restarts: int = 0


class ProcessIsolationManager(ABC):
    """Interface for per-instance process supervision."""

    @abstractmethod
    async def create_process(
        self,
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
        """Register a process without starting it.

        Raises:
            ProcessError: If a record with the same ID exists.
        """
        ...

    @abstractmethod
    async def start_process(self, process_id: str) -> None:
        """Spawn the registered process."""
        ...

    @abstractmethod
    async def stop_process(self, process_id: str) -> None:
        """Stop a running process."""
        ...

    @abstractmethod
    async def restart_process(self, process_id: str) -> None:
        """Stop then start the process, counting the restart."""
        ...

    @abstractmethod
    async def get_process(self, process_id: str) -> ProcessInfo:
        """Return a snapshot.

        Raises:
            ProcessError: If no record exists.
        """
        ...

    @abstractmethod
    async def delete_process(self, process_id: str) -> None:
        """Stop if needed and forget the record."""
        ...

    @abstractmethod
    async def list_processes(self) -> list[ProcessInfo]:
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop every running process and the supervisor itself."""
        ...
