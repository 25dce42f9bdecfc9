"""
Container runtime wrapper (docker CLI).

Each execution gets its own long-lived instance: started detached with the
script directory bind-mounted read-only and a non-root user, used through
``docker exec``, and force-removed afterwards.

An instance that needs packages starts on the install network, installs, and
is detached from it before any generated code runs.
"""

import asyncio
import secrets
from pathlib import Path

from ..errors import InstanceCreateFailedError, NetworkIsolationError, RuntimeUnavailableError
from ..log_config import get_logger


class ContainerRuntime:
    """Drive ephemeral sandbox instances through the docker CLI."""

    SCRIPTS_DIR = "/home/sandboxuser/scripts"
    SANDBOX_USER = "sandboxuser"
    MEMORY_LIMIT = "512m"
    CPU_LIMIT = "1.0"
    PIDS_LIMIT = "256"
    INSTALL_NETWORK = "bridge"
    PROBE_TIMEOUT = 10.0
    CREATE_TIMEOUT = 60.0
    REMOVE_TIMEOUT = 30.0
    INSTALL_TIMEOUT = 300.0

    def __init__(self, image: str = "python-sandbox", cli: str = "docker"):
        self.image = image
        self.cli = cli
        self.log = get_logger("container", image=image)

    async def _run(self, *args: str, timeout: float) -> tuple[int | None, str, str]:
        """Run one CLI command; returns (exit_code, stdout, stderr). exit_code is None on timeout."""
        try:
            process = await asyncio.create_subprocess_exec(
                self.cli,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise RuntimeUnavailableError(f"{self.cli} CLI not found: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError:
            process.kill()
            await process.wait()
            return None, "", f"{self.cli} {args[0]} timed out after {timeout:g} seconds"

        return (
            process.returncode,
            stdout.decode(errors="replace").strip(),
            stderr.decode(errors="replace").strip(),
        )

    async def check_available(self) -> None:
        """Verify the daemon answers and the sandbox image exists.

        Raises:
            RuntimeUnavailableError: Either check fails.
        """
        code, _, stderr = await self._run(
            "version", "--format", "{{.Server.Version}}", timeout=self.PROBE_TIMEOUT
        )
        if code != 0:
            raise RuntimeUnavailableError(f"{self.cli} daemon not reachable: {stderr}")

        code, _, stderr = await self._run("image", "inspect", self.image, timeout=self.PROBE_TIMEOUT)
        if code != 0:
            raise RuntimeUnavailableError(
                f"Image '{self.image}' not found. Build it with: "
                f"{self.cli} build -t {self.image} ."
            )

    def build_create_argv(self, name: str, script_dir: Path, network: bool) -> list[str]:
        argv = ["run", "--detach", "--name", name]
        argv += ["--network", self.INSTALL_NETWORK if network else "none"]
        argv += ["--user", self.SANDBOX_USER]
        argv += ["--memory", self.MEMORY_LIMIT, "--cpus", self.CPU_LIMIT]
        argv += ["--pids-limit", self.PIDS_LIMIT]
        argv += ["--security-opt", "no-new-privileges"]
        argv += ["--tmpfs", "/tmp:rw,noexec,nosuid,size=64m"]
        argv += ["-v", f"{script_dir.resolve()}:{self.SCRIPTS_DIR}:ro"]
        argv += [self.image, "sleep", "infinity"]
        return argv

    async def create(self, script_dir: Path, network: bool = False) -> str:
        """Start a detached instance and return its id.

        Raises:
            InstanceCreateFailedError: The runtime refused to start the instance.
        """
        name = f"pymakebot-{secrets.token_hex(6)}"
        code, stdout, stderr = await self._run(
            *self.build_create_argv(name, script_dir, network), timeout=self.CREATE_TIMEOUT
        )
        if code != 0:
            self.log.error("container.create_failed", name=name, exit_code=code, stderr=stderr)
            # A timed-out or failed run may still have left a named instance behind.
            await self.remove(name)
            raise InstanceCreateFailedError(f"Failed to create sandbox instance: {stderr}")

        instance_id = stdout.splitlines()[-1] if stdout else name
        self.log.info("container.created", name=name, instance_id=instance_id[:12], network=network)
        return instance_id

    def exec_argv(self, instance_id: str, script_name: str, interactive: bool = False) -> list[str]:
        """Full argv (CLI included) that runs ``script_name`` inside the instance."""
        argv = [self.cli, "exec"]
        if interactive:
            argv += ["-i"]
        argv += [instance_id, "python3", f"{self.SCRIPTS_DIR}/{script_name}"]
        return argv

    async def install(self, instance_id: str, packages: tuple[str, ...]) -> bool:
        if not packages:
            return True
        self.log.info("container.install_start", packages=list(packages))
        code, _, stderr = await self._run(
            "exec",
            instance_id,
            "pip",
            "install",
            "--quiet",
            "--user",
            *packages,
            timeout=self.INSTALL_TIMEOUT,
        )
        if code != 0:
            self.log.warn("container.install_failed", exit_code=code, stderr=stderr[:500])
            return False
        self.log.info("container.install_complete", packages=list(packages))
        return True

    async def disconnect_network(self, instance_id: str) -> None:
        """Detach the install network and confirm the instance has no network left.

        Raises:
            NetworkIsolationError: The disconnect failed or a network is still attached.
        """
        code, _, stderr = await self._run(
            "network",
            "disconnect",
            "--force",
            self.INSTALL_NETWORK,
            instance_id,
            timeout=self.PROBE_TIMEOUT,
        )
        if code != 0:
            self.log.error(
                "container.disconnect_failed",
                instance_id=instance_id[:12],
                exit_code=code,
                stderr=stderr,
            )
            raise NetworkIsolationError(f"Failed to disconnect sandbox network: {stderr}")

        code, stdout, stderr = await self._run(
            "inspect",
            "--format",
            "{{range $name, $_ := .NetworkSettings.Networks}}{{$name}} {{end}}",
            instance_id,
            timeout=self.PROBE_TIMEOUT,
        )
        if code != 0 or stdout:
            self.log.error(
                "container.network_still_attached",
                instance_id=instance_id[:12],
                exit_code=code,
                networks=stdout,
            )
            raise NetworkIsolationError(
                f"Sandbox instance still has network access: {stdout or stderr}"
            )
        self.log.info("container.network_disconnected", instance_id=instance_id[:12])

    async def remove(self, instance_id: str) -> bool:
        """Force-remove the instance. Never raises."""
        try:
            code, _, stderr = await self._run(
                "rm", "--force", instance_id, timeout=self.REMOVE_TIMEOUT
            )
        except RuntimeUnavailableError as e:
            self.log.error("container.remove_failed", exc=e, instance_id=instance_id[:12])
            return False
        if code != 0:
            self.log.error(
                "container.remove_failed",
                instance_id=instance_id[:12],
                exit_code=code,
                stderr=stderr,
            )
            return False
        self.log.debug("container.removed", instance_id=instance_id[:12])
        return True
