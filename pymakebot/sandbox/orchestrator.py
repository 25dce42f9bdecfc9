"""
Sandbox orchestrator - picks host or container isolation and owns the
runtime resources of one execution.

Per execution: Idle -> Preparing -> Running -> Cleaning -> Done, or
Failed from any non-terminal state. Resources (a container instance or
a temporary virtual environment) are acquired in Preparing and released
in Cleaning on every exit path.
"""

import os
import shutil
import sys
import tempfile
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import NamedTuple

from ..errors import RuntimeUnavailableError
from ..log_config import get_logger
from ..types import ExecutionMode, ExecutionRequest, ExecutionResult, IsolationMode, SandboxState
from .container import ContainerRuntime
from .supervisor import ExecutionSupervisor


class IsolationTarget(NamedTuple):
    """Where one execution actually runs, decided once before preparing."""

    isolation: IsolationMode
    degraded_reason: str | None = None


class SandboxHandle(NamedTuple):
    """A live runtime for one execution: a container id, or a host interpreter."""

    isolation: IsolationMode
    instance_id: str | None = None
    interpreter: str | None = None
    env_dir: Path | None = None
    failed_installs: tuple[str, ...] = ()


class SandboxOrchestrator:
    """Run ExecutionRequests on the host or in a container."""

    INSTALL_TIMEOUT = 300.0
    VENV_TIMEOUT = 120.0

    _TRANSITIONS = {
        SandboxState.IDLE: {SandboxState.PREPARING, SandboxState.FAILED},
        SandboxState.PREPARING: {SandboxState.RUNNING, SandboxState.CLEANING, SandboxState.FAILED},
        SandboxState.RUNNING: {SandboxState.CLEANING, SandboxState.FAILED},
        SandboxState.CLEANING: {SandboxState.DONE, SandboxState.FAILED},
        SandboxState.DONE: set(),
        SandboxState.FAILED: set(),
    }

    def __init__(
        self,
        supervisor: ExecutionSupervisor,
        runtime: ContainerRuntime | None = None,
        use_venv: bool = False,
    ):
        self.supervisor = supervisor
        self.runtime = runtime
        self.use_venv = use_venv
        self.state = SandboxState.IDLE
        self.transitions: list[SandboxState] = [SandboxState.IDLE]
        self.log = get_logger("sandbox")

    def _transition(self, new_state: SandboxState) -> None:
        if new_state not in self._TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid sandbox transition {self.state.value} -> {new_state.value}")
        self.log.debug("sandbox.state", from_state=self.state.value, to_state=new_state.value)
        self.state = new_state
        self.transitions.append(new_state)

    async def resolve_target(self, request: ExecutionRequest) -> IsolationTarget:
        """Decide host vs container once. An unreachable runtime degrades to host."""
        if request.isolation == IsolationMode.HOST:
            return IsolationTarget(IsolationMode.HOST)

        if self.runtime is None:
            reason = "no container runtime configured"
        else:
            try:
                await self.runtime.check_available()
                return IsolationTarget(IsolationMode.CONTAINER)
            except RuntimeUnavailableError as e:
                reason = str(e)

        self.log.warn("sandbox.fallback", requested="container", using="host", reason=reason)
        return IsolationTarget(IsolationMode.HOST, degraded_reason=reason)

    async def run(self, request: ExecutionRequest) -> ExecutionResult:
        """Execute ``request``; the runtime is released before this returns."""
        self.state = SandboxState.IDLE
        self.transitions = [SandboxState.IDLE]
        try:
            self._transition(SandboxState.PREPARING)
            target = await self.resolve_target(request)
            async with self.acquire(request, target) as handle:
                self._transition(SandboxState.RUNNING)
                result = await self._dispatch(request, handle)
            self._transition(SandboxState.DONE)
        except BaseException as e:
            if self.state not in (SandboxState.DONE, SandboxState.FAILED):
                self._transition(SandboxState.FAILED)
            self.log.error("sandbox.failed", error_type=type(e).__name__, error=str(e))
            raise
        return result

    @asynccontextmanager
    async def acquire(
        self, request: ExecutionRequest, target: IsolationTarget
    ) -> AsyncIterator[SandboxHandle]:
        """Create the runtime for ``target`` and always release it on exit."""
        handle: SandboxHandle | None = None
        try:
            if target.isolation == IsolationMode.CONTAINER:
                handle = await self._prepare_container(request)
            else:
                handle = await self._prepare_host(request)
            yield handle
        finally:
            self._transition(SandboxState.CLEANING)
            if handle is not None:
                await self._release(handle)

    async def _prepare_container(self, request: ExecutionRequest) -> SandboxHandle:
        script_dir = request.script_path.resolve().parent
        instance_id = await self.runtime.create(script_dir, network=bool(request.packages))
        handle = SandboxHandle(IsolationMode.CONTAINER, instance_id=instance_id)
        if request.packages:
            try:
                installed = await self.runtime.install(instance_id, request.packages)
                # Generated code never runs with the install network attached.
                await self.runtime.disconnect_network(instance_id)
            except BaseException:
                await self._release(handle)
                raise
            if not installed:
                handle = handle._replace(failed_installs=request.packages)
        return handle

    async def _prepare_host(self, request: ExecutionRequest) -> SandboxHandle:
        env_dir = None
        interpreter = self.supervisor.resolve_interpreter()
        if self.use_venv:
            env_dir = await self.create_venv(interpreter)
            if env_dir is not None:
                interpreter = str(venv_python(env_dir))
        handle = SandboxHandle(IsolationMode.HOST, interpreter=interpreter, env_dir=env_dir)
        if request.packages:
            try:
                installed = await self.install_host(request.packages, interpreter)
            except BaseException:
                await self._release(handle)
                raise
            if not installed:
                handle = handle._replace(failed_installs=request.packages)
        return handle

    async def _dispatch(self, request: ExecutionRequest, handle: SandboxHandle) -> ExecutionResult:
        if handle.isolation == IsolationMode.CONTAINER:
            argv = self.runtime.exec_argv(
                handle.instance_id,
                request.script_path.name,
                interactive=request.mode == ExecutionMode.INTERACTIVE,
            )
            result = await self.supervisor.execute_command(
                argv,
                mode=request.mode,
                timeout=request.timeout,
                script_path=request.script_path,
                isolation=IsolationMode.CONTAINER,
            )
        else:
            result = await self.supervisor.execute(
                request.script_path,
                mode=request.mode,
                timeout=request.timeout,
                interpreter=handle.interpreter,
            )
        if handle.failed_installs:
            result = result.model_copy(update={"failed_installs": handle.failed_installs})
        return result

    async def _release(self, handle: SandboxHandle) -> None:
        if handle.instance_id is not None:
            await self.runtime.remove(handle.instance_id)
        if handle.env_dir is not None and handle.env_dir.exists():
            shutil.rmtree(handle.env_dir, ignore_errors=True)
            self.log.debug("sandbox.venv_removed", path=str(handle.env_dir))

    async def create_venv(self, base_interpreter: str) -> Path | None:
        """Create a throwaway virtual environment; None if creation fails."""
        env_dir = Path(tempfile.mkdtemp(prefix="pymakebot-venv-"))
        result = await self.supervisor.execute_command(
            [base_interpreter, "-m", "venv", str(env_dir)], timeout=self.VENV_TIMEOUT
        )
        if not result.is_success:
            self.log.warn(
                "sandbox.venv_failed",
                exit_code=result.exit_code,
                stderr=result.stderr[:500],
            )
            shutil.rmtree(env_dir, ignore_errors=True)
            return None
        self.log.info("sandbox.venv_created", path=str(env_dir))
        return env_dir

    async def install_host(self, packages: tuple[str, ...], interpreter: str | None = None) -> bool:
        """``pip install`` into ``interpreter``'s environment. Returns False on failure."""
        resolved = self.supervisor.resolve_interpreter(interpreter)
        self.log.info("sandbox.install_start", packages=list(packages), interpreter=resolved)
        result = await self.supervisor.execute_command(
            [resolved, "-m", "pip", "install", "--quiet", *packages],
            timeout=self.INSTALL_TIMEOUT,
        )
        if not result.is_success:
            self.log.warn(
                "sandbox.install_failed",
                exit_code=result.exit_code,
                timed_out=result.timed_out,
                stderr=result.stderr[:500],
            )
            return False
        self.log.info("sandbox.install_complete", packages=list(packages))
        return True


def venv_python(env_dir: Path) -> Path:
    if os.name == "nt" or sys.platform == "win32":
        return env_dir / "Scripts" / "python.exe"
    return env_dir / "bin" / "python"
