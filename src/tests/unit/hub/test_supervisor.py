"""Unit tests for SubprocessIsolationManager using real child processes."""

import asyncio
import sys
from pathlib import Path

import pytest

from instancehub.api.errors import ProcessError
from instancehub.isolation.process import IsolationLimits, ProcessStatus
from instancehub.isolation.supervisor import SubprocessIsolationManager

SLEEPER = ["-c", "import time; time.sleep(60)"]
FAILER = ["-c", "import sys; sys.exit(3)"]


def _limits(**overrides) -> IsolationLimits:
    values = {
        "enable_resource_limits": False,
        "monitoring_interval": 0.05,
        "auto_restart": False,
        "timeout": 0,
    }
    values.update(overrides)
    return IsolationLimits(**values)


async def _wait_for_status(
    supervisor: SubprocessIsolationManager, process_id: str, status: ProcessStatus
) -> None:
    async with asyncio.timeout(10):
        while (await supervisor.get_process(process_id)).status != status:
            await asyncio.sleep(0.02)


class TestSubprocessIsolationManager:
    """Tests for SubprocessIsolationManager."""

    @pytest.fixture
    async def supervisor(self, tmp_path: Path) -> SubprocessIsolationManager:
        supervisor = SubprocessIsolationManager(
            tmp_path, stop_grace_seconds=2.0, restart_delay_seconds=0.0
        )
        yield supervisor
        await supervisor.stop()

    async def test_start_and_stop(self, supervisor: SubprocessIsolationManager) -> None:
        await supervisor.create_process("p1", "worker-p1", sys.executable, SLEEPER, _limits())

        await supervisor.start_process("p1")
        running = await supervisor.get_process("p1")
        assert running.status == ProcessStatus.RUNNING
        assert running.pid > 0
        assert running.started_at is not None

        await supervisor.stop_process("p1")
        stopped = await supervisor.get_process("p1")
        assert stopped.status == ProcessStatus.STOPPED
        assert stopped.pid == 0
        assert stopped.stopped_at is not None

    async def test_environment_and_log(
        self, supervisor: SubprocessIsolationManager, tmp_path: Path
    ) -> None:
        log_path = tmp_path / "out" / "app.log"
        script = ["-c", "import os; print(os.environ['INSTANCE_ID'])"]
        await supervisor.create_process(
            "p1",
            "worker-p1",
            sys.executable,
            script,
            _limits(),
            environment={"INSTANCE_ID": "alice_1"},
            log_path=str(log_path),
        )

        await supervisor.start_process("p1")
        await _wait_for_status(supervisor, "p1", ProcessStatus.CRASHED)

        assert log_path.read_text().strip() == "alice_1"

    async def test_crash_detected(self, supervisor: SubprocessIsolationManager) -> None:
        await supervisor.create_process("p1", "worker-p1", sys.executable, FAILER, _limits())

        await supervisor.start_process("p1")
        await _wait_for_status(supervisor, "p1", ProcessStatus.CRASHED)

        info = await supervisor.get_process("p1")
        assert info.exit_code == 3
        assert info.pid == 0

    async def test_auto_restart_bounded(self, supervisor: SubprocessIsolationManager) -> None:
        """A crashing process is restarted at most max_restarts times."""
        limits = _limits(auto_restart=True, max_restarts=2)
        await supervisor.create_process("p1", "worker-p1", sys.executable, FAILER, limits)

        await supervisor.start_process("p1")
        async with asyncio.timeout(10):
            while (info := await supervisor.get_process("p1")).restarts < 2 or info.status != ProcessStatus.CRASHED:
                await asyncio.sleep(0.02)

        await asyncio.sleep(0.2)
        info = await supervisor.get_process("p1")
        assert info.restarts == 2
        assert info.status == ProcessStatus.CRASHED

    async def test_restart_counts(self, supervisor: SubprocessIsolationManager) -> None:
        await supervisor.create_process("p1", "worker-p1", sys.executable, SLEEPER, _limits())
        await supervisor.start_process("p1")
        first_pid = (await supervisor.get_process("p1")).pid

        await supervisor.restart_process("p1")

        info = await supervisor.get_process("p1")
        assert info.status == ProcessStatus.RUNNING
        assert info.restarts == 1
        assert info.pid != first_pid

    async def test_timeout_marks_error(self, supervisor: SubprocessIsolationManager) -> None:
        await supervisor.create_process("p1", "worker-p1", sys.executable, SLEEPER, _limits(timeout=0.2))

        await supervisor.start_process("p1")
        await _wait_for_status(supervisor, "p1", ProcessStatus.ERROR)

    async def test_duplicate_and_missing(self, supervisor: SubprocessIsolationManager) -> None:
        await supervisor.create_process("p1", "worker-p1", sys.executable, SLEEPER, _limits())

        with pytest.raises(ProcessError):
            await supervisor.create_process("p1", "worker-p1", sys.executable, SLEEPER, _limits())
        with pytest.raises(ProcessError):
            await supervisor.get_process("missing")
        with pytest.raises(ProcessError):
            await supervisor.stop_process("p1")

    async def test_delete_removes_owned_dir(
        self, supervisor: SubprocessIsolationManager, tmp_path: Path
    ) -> None:
        info = await supervisor.create_process("p1", "worker-p1", sys.executable, SLEEPER, _limits())
        await supervisor.start_process("p1")

        await supervisor.delete_process("p1")

        assert not Path(info.working_dir).exists()
        assert await supervisor.list_processes() == []

    async def test_delete_keeps_caller_dir(
        self, supervisor: SubprocessIsolationManager, tmp_path: Path
    ) -> None:
        workdir = tmp_path / "instance"
        await supervisor.create_process(
            "p1", "worker-p1", sys.executable, SLEEPER, _limits(), working_dir=str(workdir)
        )

        await supervisor.delete_process("p1")

        assert workdir.is_dir()

    async def test_spawn_failure(self, supervisor: SubprocessIsolationManager, tmp_path: Path) -> None:
        await supervisor.create_process("p1", "worker-p1", str(tmp_path / "no-such-binary"), [], _limits())

        with pytest.raises(ProcessError):
            await supervisor.start_process("p1")

        assert (await supervisor.get_process("p1")).status == ProcessStatus.ERROR
