"""Local subprocess supervisor.

One asyncio subprocess per instance. stdout/stderr go to the process log
file. A monitor task per process observes exit, applies the run timeout and
auto-restarts crashed processes up to ``max_restarts`` times.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import sys
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import IO, Callable

from instancehub.api.errors import ProcessError
from instancehub.isolation.process import (
    IsolationLimits,
    ProcessInfo,
    ProcessIsolationManager,
    ProcessStatus,
)
from instancehub.logging_schema import LogEvent

if sys.platform != "win32":
    import resource
else:
    resource = None

logger = logging.getLogger(__name__)


@dataclass
class _Supervised:
    info: ProcessInfo
    owns_working_dir: bool
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    proc: asyncio.subprocess.Process | None = None
    monitor: asyncio.Task | None = None
    log_file: IO[bytes] | None = None
    stop_requested: bool = False


def _memory_limiter(limits: IsolationLimits) -> Callable[[], None] | None:
    """Build a preexec hook applying the memory ceiling as an address-space rlimit.

    The CPU ceiling has no portable rlimit equivalent and is only logged.
    """
    if resource is None or not limits.enable_resource_limits or limits.memory_limit_mb <= 0:
        return None
    ceiling = limits.memory_limit_mb * 1024 * 1024

    def apply() -> None:
        resource.setrlimit(resource.RLIMIT_AS, (ceiling, ceiling))

    return apply


class SubprocessIsolationManager(ProcessIsolationManager):
    """Supervise worker processes as local OS subprocesses."""

    def __init__(
        self,
        base_path: Path,
        stop_grace_seconds: float = 10.0,
        restart_delay_seconds: float = 2.0,
    ) -> None:
        self._base_path = Path(base_path)
        self._stop_grace = stop_grace_seconds
        self._restart_delay = restart_delay_seconds
        self._processes: dict[str, _Supervised] = {}
        self._lock = asyncio.Lock()
        self._closing = False

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
        async with self._lock:
            if process_id in self._processes:
                raise ProcessError(f"Process already exists: {process_id}")

            owns_working_dir = working_dir is None
            workdir = Path(working_dir) if working_dir else self._base_path / "processes" / process_id
            logfile = Path(log_path) if log_path else workdir / "logs" / "process.log"
            try:
                workdir.mkdir(parents=True, exist_ok=True)
                logfile.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ProcessError(f"Failed to create working directory: {e}") from e

            info = ProcessInfo(
                id=process_id,
                name=name,
                command=executable,
                args=list(args),
                working_dir=str(workdir),
                environment=dict(environment or {}),
                log_path=str(logfile),
                limits=limits,
            )
            self._processes[process_id] = _Supervised(info=info, owns_working_dir=owns_working_dir)

        logger.info(
            "Created isolated process",
            extra={"event": LogEvent.PROCESS_CREATED, "process_id": process_id},
        )
        return info.model_copy(deep=True)

    async def start_process(self, process_id: str) -> None:
        entry = self._get(process_id)
        async with entry.lock:
            if entry.info.status == ProcessStatus.RUNNING:
                raise ProcessError(f"Process is already running: {process_id}")
            await self._spawn(entry)

    async def stop_process(self, process_id: str) -> None:
        entry = self._get(process_id)
        async with entry.lock:
            if entry.info.status != ProcessStatus.RUNNING:
                raise ProcessError(f"Process is not running: {process_id}")

            entry.stop_requested = True
            entry.info.status = ProcessStatus.STOPPING
            proc = entry.proc
            entry.proc = None
            if proc is not None:
                await self._terminate(proc)
                entry.info.exit_code = proc.returncode

            entry.info.status = ProcessStatus.STOPPED
            entry.info.pid = 0
            entry.info.stopped_at = datetime.now(UTC)

        logger.info(
            "Stopped isolated process",
            extra={"event": LogEvent.PROCESS_STOPPED, "process_id": process_id},
        )

    async def restart_process(self, process_id: str) -> None:
        entry = self._get(process_id)
        if entry.info.status == ProcessStatus.RUNNING:
            await self.stop_process(process_id)
            await asyncio.sleep(self._restart_delay)

        async with entry.lock:
            entry.info.restarts += 1
            if entry.info.status == ProcessStatus.RUNNING:
                # Monitor auto-restarted it during the pause
                return
            await self._spawn(entry)

    async def get_process(self, process_id: str) -> ProcessInfo:
        return self._get(process_id).info.model_copy(deep=True)

    async def delete_process(self, process_id: str) -> None:
        entry = self._get(process_id)
        if entry.info.status == ProcessStatus.RUNNING:
            try:
                await self.stop_process(process_id)
            except ProcessError as e:
                logger.warning(
                    "Failed to stop process before delete",
                    extra={"event": LogEvent.CLEANUP_FAILED, "process_id": process_id, "error": str(e)},
                )

        if entry.monitor is not None and not entry.monitor.done():
            entry.monitor.cancel()

        if entry.owns_working_dir:
            await asyncio.to_thread(shutil.rmtree, entry.info.working_dir, ignore_errors=True)

        async with self._lock:
            self._processes.pop(process_id, None)

        logger.info(
            "Deleted isolated process",
            extra={"event": LogEvent.PROCESS_DELETED, "process_id": process_id},
        )

    async def list_processes(self) -> list[ProcessInfo]:
        return [entry.info.model_copy(deep=True) for entry in self._processes.values()]

    async def stop(self) -> None:
        self._closing = True
        for process_id, entry in list(self._processes.items()):
            if entry.info.status != ProcessStatus.RUNNING:
                continue
            try:
                await self.stop_process(process_id)
            except ProcessError as e:
                logger.warning(
                    "Failed to stop process on shutdown",
                    extra={"event": LogEvent.CLEANUP_FAILED, "process_id": process_id, "error": str(e)},
                )

    # =========================================================================
    # Internals
    # =========================================================================

    def _get(self, process_id: str) -> _Supervised:
        entry = self._processes.get(process_id)
        if entry is None:
            raise ProcessError(f"Process not found: {process_id}")
        return entry

    async def _spawn(self, entry: _Supervised) -> None:
        """Start the OS process. Caller holds entry.lock."""
        info = entry.info
        info.status = ProcessStatus.STARTING

        if info.limits.enable_resource_limits:
            logger.debug(
                "Applying resource limits",
                extra={
                    "process_id": info.id,
                    "memory_limit_mb": info.limits.memory_limit_mb,
                    "cpu_limit_percent": info.limits.cpu_limit_percent,
                },
            )

        try:
            log_file = open(info.log_path, "ab")
        except OSError as e:
            info.status = ProcessStatus.ERROR
            raise ProcessError(f"Failed to open log file: {e}") from e

        try:
            proc = await asyncio.create_subprocess_exec(
                info.command,
                *info.args,
                cwd=info.working_dir,
                env={**os.environ, **info.environment},
                stdout=log_file,
                stderr=asyncio.subprocess.STDOUT,
                preexec_fn=_memory_limiter(info.limits),
                start_new_session=True,
            )
        except OSError as e:
            log_file.close()
            info.status = ProcessStatus.ERROR
            raise ProcessError(f"Failed to start process {info.id}: {e}") from e

        entry.proc = proc
        entry.log_file = log_file
        entry.stop_requested = False
        info.pid = proc.pid
        info.status = ProcessStatus.RUNNING
        info.started_at = datetime.now(UTC)
        info.stopped_at = None
        info.exit_code = None
        entry.monitor = asyncio.create_task(self._monitor(entry, proc, log_file))

        logger.info(
            "Started isolated process",
            extra={"event": LogEvent.PROCESS_STARTED, "process_id": info.id, "pid": proc.pid},
        )

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL after the grace period."""
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._stop_grace)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()

    async def _monitor(
        self,
        entry: _Supervised,
        proc: asyncio.subprocess.Process,
        log_file: IO[bytes],
    ) -> None:
        info = entry.info
        limits = info.limits
        loop = asyncio.get_running_loop()
        deadline = loop.time() + limits.timeout if limits.timeout > 0 else None
        interval = limits.monitoring_interval if limits.monitoring_interval > 0 else None
        timed_out = False

        waiter = asyncio.ensure_future(proc.wait())
        try:
            while True:
                done, _ = await asyncio.wait({waiter}, timeout=interval)
                if done:
                    break
                if deadline is not None and not timed_out and loop.time() >= deadline:
                    timed_out = True
                    logger.warning(
                        "Process exceeded run timeout",
                        extra={"event": LogEvent.PROCESS_EXITED, "process_id": info.id, "timeout": limits.timeout},
                    )
                    await self._terminate(proc)
            returncode = waiter.result()
        finally:
            waiter.cancel()
            log_file.close()

        async with entry.lock:
            if entry.proc is not proc:
                # Stopped or replaced through the API
                return
            entry.proc = None
            info.pid = 0
            info.exit_code = returncode
            info.stopped_at = datetime.now(UTC)

            if entry.stop_requested:
                info.status = ProcessStatus.STOPPED
                return
            if timed_out:
                info.status = ProcessStatus.ERROR
                return

            info.status = ProcessStatus.CRASHED
            logger.error(
                "Process crashed",
                extra={"event": LogEvent.PROCESS_CRASHED, "process_id": info.id, "exit_code": returncode},
            )
            should_restart = (
                limits.auto_restart and info.restarts < limits.max_restarts and not self._closing
            )

        if not should_restart:
            return

        await asyncio.sleep(self._restart_delay)
        async with entry.lock:
            if info.status != ProcessStatus.CRASHED or self._closing:
                return
            info.restarts += 1
            try:
                await self._spawn(entry)
            except ProcessError as e:
                logger.error(
                    "Auto-restart failed",
                    extra={"event": LogEvent.PROCESS_CRASHED, "process_id": info.id, "error": str(e)},
                )
