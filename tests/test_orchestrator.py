"""
Tests for the sandbox orchestrator.

Container tests use a runtime double whose exec command runs the script
with the local interpreter, so the real supervisor is exercised while no
container daemon is needed.
"""

import os
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from pymakebot.errors import (
    InstanceCreateFailedError,
    InterpreterNotFoundError,
    NetworkIsolationError,
    RuntimeUnavailableError,
    SpawnFailedError,
)
from pymakebot.sandbox.orchestrator import IsolationTarget, SandboxOrchestrator
from pymakebot.sandbox.supervisor import ExecutionSupervisor
from pymakebot.types import (
    ExecutionMode,
    ExecutionRequest,
    ExecutionResult,
    IsolationMode,
    SandboxState,
)
from tests.conftest import write_script

HAPPY_PATH = [
    SandboxState.IDLE,
    SandboxState.PREPARING,
    SandboxState.RUNNING,
    SandboxState.CLEANING,
    SandboxState.DONE,
]


class FakeRuntime:
    """Container runtime double tracking live and networked instances."""

    def __init__(self, available: bool = True, create_error: Exception | None = None):
        self.available = available
        self.create_error = create_error
        self.live: set[str] = set()
        self.networked: set[str] = set()
        self.created: list[tuple[Path, bool]] = []
        self.exec_networked: list[bool] = []
        self.check_available = AsyncMock(side_effect=self._check)
        self.install = AsyncMock(return_value=True)
        self.disconnect_network = AsyncMock(side_effect=self._disconnect)
        self.remove = AsyncMock(side_effect=self._remove)

    async def _check(self):
        if not self.available:
            raise RuntimeUnavailableError("docker daemon not reachable")

    async def create(self, script_dir: Path, network: bool = False) -> str:
        if self.create_error is not None:
            raise self.create_error
        instance_id = f"inst-{len(self.created)}"
        self.created.append((script_dir, network))
        self.live.add(instance_id)
        if network:
            self.networked.add(instance_id)
        return instance_id

    async def _disconnect(self, instance_id: str) -> None:
        self.networked.discard(instance_id)

    def exec_argv(self, instance_id: str, script_name: str, interactive: bool = False):
        self.exec_networked.append(instance_id in self.networked)
        return [sys.executable, str(self.script_dir / script_name)]

    async def _remove(self, instance_id: str) -> bool:
        self.live.discard(instance_id)
        self.networked.discard(instance_id)
        return True


@pytest.fixture
def supervisor(python: str) -> ExecutionSupervisor:
    return ExecutionSupervisor(python_executable=python)


def container_request(script: Path, timeout: float | None = 30, **kwargs) -> ExecutionRequest:
    return ExecutionRequest(
        script_path=script, isolation=IsolationMode.CONTAINER, timeout=timeout, **kwargs
    )


class TestHostExecution:
    """Host isolation delegates straight to the supervisor."""

    @pytest.mark.asyncio
    async def test_host_run_walks_state_machine(self, supervisor, tmp_path: Path):
        orchestrator = SandboxOrchestrator(supervisor)
        script = write_script(tmp_path, "print('host')\n")

        result = await orchestrator.run(ExecutionRequest(script_path=script, timeout=30))

        assert result.is_success
        assert result.isolation == IsolationMode.HOST
        assert orchestrator.transitions == HAPPY_PATH
        assert orchestrator.state == SandboxState.DONE

    @pytest.mark.asyncio
    async def test_timeout_is_a_result_not_an_error(self, supervisor, tmp_path: Path):
        orchestrator = SandboxOrchestrator(supervisor)
        script = write_script(tmp_path, "import time\ntime.sleep(60)\n")

        result = await orchestrator.run(ExecutionRequest(script_path=script, timeout=1))

        assert result.timed_out
        assert result.exit_code is None
        assert orchestrator.state == SandboxState.DONE

    @pytest.mark.asyncio
    async def test_missing_interpreter_fails_state_machine(self, tmp_path: Path):
        orchestrator = SandboxOrchestrator(ExecutionSupervisor("no-such-python"))
        script = write_script(tmp_path, "print(1)\n")

        with patch("pymakebot.sandbox.supervisor.shutil.which", return_value=None):
            with pytest.raises(InterpreterNotFoundError):
                await orchestrator.run(ExecutionRequest(script_path=script))

        assert orchestrator.state == SandboxState.FAILED

    @pytest.mark.asyncio
    async def test_state_resets_between_runs(self, supervisor, tmp_path: Path):
        orchestrator = SandboxOrchestrator(supervisor)
        script = write_script(tmp_path, "print(1)\n")

        await orchestrator.run(ExecutionRequest(script_path=script, timeout=30))
        await orchestrator.run(ExecutionRequest(script_path=script, timeout=30))

        assert orchestrator.transitions == HAPPY_PATH

    @pytest.mark.asyncio
    async def test_host_packages_are_installed_before_run(self, supervisor, tmp_path: Path):
        orchestrator = SandboxOrchestrator(supervisor)
        orchestrator.install_host = AsyncMock(return_value=True)
        script = write_script(tmp_path, "print(1)\n")

        await orchestrator.run(
            ExecutionRequest(script_path=script, timeout=30, packages=("requests",))
        )

        orchestrator.install_host.assert_awaited_once()
        assert orchestrator.install_host.call_args.args[0] == ("requests",)

    @pytest.mark.asyncio
    async def test_host_install_failure_is_reported_on_result(self, supervisor, tmp_path: Path):
        orchestrator = SandboxOrchestrator(supervisor)
        orchestrator.install_host = AsyncMock(return_value=False)
        script = write_script(tmp_path, "print(1)\n")

        result = await orchestrator.run(
            ExecutionRequest(script_path=script, timeout=30, packages=("requests",))
        )

        assert result.is_success
        assert result.failed_installs == ("requests",)


class TestContainerFallback:
    """Unreachable runtime degrades to host execution."""

    @pytest.mark.asyncio
    async def test_no_runtime_configured(self, supervisor, tmp_path: Path):
        orchestrator = SandboxOrchestrator(supervisor, runtime=None)
        orchestrator.log = MagicMock()
        script = write_script(tmp_path, "print('fallback')\n")

        result = await orchestrator.run(container_request(script))

        assert result.is_success
        assert result.isolation == IsolationMode.HOST
        assert orchestrator.log.warn.call_args.args[0] == "sandbox.fallback"

    @pytest.mark.asyncio
    async def test_unreachable_runtime_falls_back(self, supervisor, tmp_path: Path):
        runtime = FakeRuntime(available=False)
        orchestrator = SandboxOrchestrator(supervisor, runtime=runtime)
        script = write_script(tmp_path, "print('fallback')\n")

        result = await orchestrator.run(container_request(script))

        assert result.is_success
        assert result.isolation == IsolationMode.HOST
        assert runtime.created == []
        runtime.check_available.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_resolve_target(self, supervisor, tmp_path: Path):
        orchestrator = SandboxOrchestrator(supervisor, runtime=FakeRuntime(available=False))
        script = write_script(tmp_path, "print(1)\n")

        target = await orchestrator.resolve_target(container_request(script))

        assert target.isolation == IsolationMode.HOST
        assert "not reachable" in target.degraded_reason
        host_target = await orchestrator.resolve_target(ExecutionRequest(script_path=script))
        assert host_target == IsolationTarget(IsolationMode.HOST)


class TestContainerLifecycle:
    """The instance is always removed before run() returns."""

    def make(self, supervisor, script: Path, **kwargs) -> tuple[SandboxOrchestrator, FakeRuntime]:
        runtime = FakeRuntime(**kwargs)
        runtime.script_dir = script.parent
        return SandboxOrchestrator(supervisor, runtime=runtime), runtime

    @pytest.mark.asyncio
    async def test_successful_container_run(self, supervisor, tmp_path: Path):
        script = write_script(tmp_path, "print('inside')\n")
        orchestrator, runtime = self.make(supervisor, script)

        result = await orchestrator.run(container_request(script))

        assert result.is_success
        assert "inside" in result.stdout
        assert result.isolation == IsolationMode.CONTAINER
        assert runtime.created == [(tmp_path.resolve(), False)]
        assert runtime.live == set()
        assert orchestrator.transitions == HAPPY_PATH

    @pytest.mark.asyncio
    async def test_failure_still_cleans_up(self, supervisor, tmp_path: Path):
        script = write_script(tmp_path, "raise SystemExit(4)\n")
        orchestrator, runtime = self.make(supervisor, script)

        result = await orchestrator.run(container_request(script))

        assert result.exit_code == 4
        assert runtime.live == set()

    @pytest.mark.asyncio
    async def test_timeout_still_cleans_up(self, supervisor, tmp_path: Path):
        script = write_script(tmp_path, "import time\ntime.sleep(60)\n")
        orchestrator, runtime = self.make(supervisor, script)

        result = await orchestrator.run(container_request(script, timeout=1))

        assert result.timed_out
        assert runtime.live == set()
        runtime.remove.assert_awaited_once_with("inst-0")

    @pytest.mark.asyncio
    async def test_spawn_error_still_cleans_up(self, supervisor, tmp_path: Path):
        script = write_script(tmp_path, "print(1)\n")
        orchestrator, runtime = self.make(supervisor, script)
        supervisor.execute_command = AsyncMock(side_effect=SpawnFailedError("boom"))

        with pytest.raises(SpawnFailedError):
            await orchestrator.run(container_request(script))

        assert runtime.live == set()
        assert orchestrator.state == SandboxState.FAILED
        assert SandboxState.CLEANING in orchestrator.transitions

    @pytest.mark.asyncio
    async def test_install_error_still_cleans_up(self, supervisor, tmp_path: Path):
        script = write_script(tmp_path, "import requests\n")
        orchestrator, runtime = self.make(supervisor, script)
        runtime.install = AsyncMock(side_effect=RuntimeUnavailableError("daemon went away"))

        with pytest.raises(RuntimeUnavailableError):
            await orchestrator.run(container_request(script, packages=("requests",)))

        assert runtime.live == set()
        assert orchestrator.state == SandboxState.FAILED

    @pytest.mark.asyncio
    async def test_script_runs_without_network_after_install(self, supervisor, tmp_path: Path):
        script = write_script(tmp_path, "print('deps')\n")
        orchestrator, runtime = self.make(supervisor, script)

        result = await orchestrator.run(container_request(script, packages=("requests",)))

        assert result.is_success
        assert runtime.created == [(tmp_path.resolve(), True)]
        runtime.install.assert_awaited_once_with("inst-0", ("requests",))
        runtime.disconnect_network.assert_awaited_once_with("inst-0")
        assert runtime.exec_networked == [False]
        assert result.failed_installs == ()

    @pytest.mark.asyncio
    async def test_no_packages_never_touches_network(self, supervisor, tmp_path: Path):
        script = write_script(tmp_path, "print('offline')\n")
        orchestrator, runtime = self.make(supervisor, script)

        await orchestrator.run(container_request(script))

        runtime.disconnect_network.assert_not_awaited()
        assert runtime.exec_networked == [False]

    @pytest.mark.asyncio
    async def test_disconnect_failure_never_runs_script(self, supervisor, tmp_path: Path):
        script = write_script(tmp_path, "print('should not run')\n")
        orchestrator, runtime = self.make(supervisor, script)
        runtime.disconnect_network = AsyncMock(
            side_effect=NetworkIsolationError("still attached")
        )

        with pytest.raises(NetworkIsolationError):
            await orchestrator.run(container_request(script, packages=("requests",)))

        assert runtime.exec_networked == []
        assert runtime.live == set()
        assert orchestrator.state == SandboxState.FAILED
        assert SandboxState.RUNNING not in orchestrator.transitions

    @pytest.mark.asyncio
    async def test_failed_install_is_reported_on_result(self, supervisor, tmp_path: Path):
        script = write_script(tmp_path, "print('ran anyway')\n")
        orchestrator, runtime = self.make(supervisor, script)
        runtime.install = AsyncMock(return_value=False)

        result = await orchestrator.run(container_request(script, packages=("nope",)))

        assert result.is_success
        assert result.failed_installs == ("nope",)
        runtime.disconnect_network.assert_awaited_once_with("inst-0")
        assert runtime.exec_networked == [False]

    @pytest.mark.asyncio
    async def test_create_failure_surfaces(self, supervisor, tmp_path: Path):
        script = write_script(tmp_path, "print(1)\n")
        orchestrator, runtime = self.make(
            supervisor, script, create_error=InstanceCreateFailedError("refused")
        )

        with pytest.raises(InstanceCreateFailedError):
            await orchestrator.run(container_request(script))

        assert orchestrator.state == SandboxState.FAILED
        runtime.remove.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_interactive_mode_reaches_container(self, supervisor, tmp_path: Path):
        script = write_script(tmp_path, "import sys\nsys.exit(0)\n")
        orchestrator, runtime = self.make(supervisor, script)

        result = await orchestrator.run(
            container_request(script, mode=ExecutionMode.INTERACTIVE, timeout=None)
        )

        assert result.is_success
        assert result.isolation == IsolationMode.CONTAINER
        assert runtime.live == set()


class TestHostEnvironments:
    """Per-run virtual environments and host installs."""

    @pytest.mark.asyncio
    @pytest.mark.skipif(os.name == "nt", reason="symlinked interpreter layout is POSIX-only")
    async def test_venv_is_used_and_removed(self, supervisor, tmp_path: Path):
        env_dir = tmp_path / "venv"
        (env_dir / "bin").mkdir(parents=True)
        (env_dir / "bin" / "python").symlink_to(sys.executable)
        orchestrator = SandboxOrchestrator(supervisor, use_venv=True)
        orchestrator.create_venv = AsyncMock(return_value=env_dir)
        script = write_script(tmp_path, "print('venv run')\n")

        result = await orchestrator.run(ExecutionRequest(script_path=script, timeout=30))

        assert result.is_success
        assert not env_dir.exists()

    @pytest.mark.asyncio
    async def test_venv_failure_degrades_to_base_interpreter(self, supervisor, tmp_path: Path):
        env_dir = tmp_path / "venv-broken"
        env_dir.mkdir()
        orchestrator = SandboxOrchestrator(supervisor, use_venv=True)
        orchestrator.log = MagicMock()
        supervisor.execute_command = AsyncMock(
            return_value=ExecutionResult(exit_code=1, stderr="ensurepip is not available")
        )

        with patch(
            "pymakebot.sandbox.orchestrator.tempfile.mkdtemp", return_value=str(env_dir)
        ):
            created = await orchestrator.create_venv(sys.executable)

        assert created is None
        assert not env_dir.exists()
        assert orchestrator.log.warn.call_args.args[0] == "sandbox.venv_failed"
        argv = supervisor.execute_command.call_args.args[0]
        assert argv == [sys.executable, "-m", "venv", str(env_dir)]

    @pytest.mark.asyncio
    async def test_install_host_argv(self, supervisor):
        supervisor.execute_command = AsyncMock(return_value=ExecutionResult(exit_code=0))
        orchestrator = SandboxOrchestrator(supervisor)

        assert await orchestrator.install_host(("requests", "PyYAML"), sys.executable)

        argv = supervisor.execute_command.call_args.args[0]
        assert argv[1:] == ["-m", "pip", "install", "--quiet", "requests", "PyYAML"]

    @pytest.mark.asyncio
    async def test_install_host_failure_returns_false(self, supervisor):
        supervisor.execute_command = AsyncMock(
            return_value=ExecutionResult(exit_code=1, stderr="No matching distribution")
        )
        orchestrator = SandboxOrchestrator(supervisor)
        orchestrator.log = MagicMock()

        assert not await orchestrator.install_host(("nope",), sys.executable)
        assert orchestrator.log.warn.call_args.args[0] == "sandbox.install_failed"
