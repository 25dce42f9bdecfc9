"""
Execution supervisor - runs one script as a child process.

Captured mode pipes stdout/stderr, closes stdin and races the process
against a deadline; whichever finishes first decides the result. On
timeout the process is killed and reported as ``timed_out=True`` with
no exit code. Interactive mode inherits the terminal and has no
deadline.
"""

import asyncio
import re
import shutil
import time
from collections.abc import Sequence
from pathlib import Path

from ..errors import InterpreterNotFoundError, SpawnFailedError
from ..log_config import get_logger
from ..types import (
    ExecutionMode,
    ExecutionResult,
    IsolationMode,
    LintDiagnostic,
    LintResult,
    LintSeverity,
)

INTERACTIVE_STDOUT = "[Interactive mode - output displayed directly]"

LINT_LINE_RE = re.compile(
    r"^(?P<path>.+?):(?P<line>\d+):(?P<col>\d+): (?P<code>[A-Za-z]+\d*):? (?P<message>.*)$"
)


class ExecutionSupervisor:
    """Spawn, time-limit and classify child processes."""

    FALLBACK_EXECUTABLE = "python"
    # Bound on reading leftover output after a kill; a grandchild may hold the pipes open.
    DRAIN_TIMEOUT = 2.0
    SYNTAX_CHECK_TIMEOUT = 30.0
    LINT_TIMEOUT = 60.0

    def __init__(self, python_executable: str = "python3"):
        self.python_executable = python_executable
        self.log = get_logger("supervisor")

    def resolve_interpreter(self, preferred: str | None = None) -> str:
        """Resolve the primary interpreter name, falling back to ``python``.

        Raises:
            InterpreterNotFoundError: Neither name resolves on PATH.
        """
        candidates = [preferred or self.python_executable, self.FALLBACK_EXECUTABLE]
        for name in candidates:
            resolved = shutil.which(name)
            if resolved:
                return resolved
        raise InterpreterNotFoundError(
            f"No Python interpreter found (tried {', '.join(candidates)})"
        )

    async def execute(
        self,
        script_path: Path,
        mode: ExecutionMode = ExecutionMode.CAPTURED,
        timeout: float | None = None,
        interpreter: str | None = None,
    ) -> ExecutionResult:
        """Run ``script_path`` with the local interpreter."""
        resolved = self.resolve_interpreter(interpreter)
        return await self.execute_command(
            [resolved, str(script_path)],
            mode=mode,
            timeout=timeout,
            script_path=script_path,
        )

    async def execute_command(
        self,
        argv: Sequence[str],
        mode: ExecutionMode = ExecutionMode.CAPTURED,
        timeout: float | None = None,
        script_path: Path | None = None,
        isolation: IsolationMode = IsolationMode.HOST,
    ) -> ExecutionResult:
        """Run an arbitrary argv under supervision.

        Used directly for container execution, where the argv is the
        runtime's exec command.
        """
        self.log.info(
            "supervisor.spawn",
            mode=mode.value,
            isolation=isolation.value,
            timeout_s=timeout,
            script=str(script_path) if script_path else None,
        )
        if mode == ExecutionMode.INTERACTIVE:
            result = await self._run_interactive(argv)
        else:
            result = await self._run_captured(argv, timeout)

        result = result.model_copy(update={"script_path": script_path, "isolation": isolation})
        self.log.info(
            "supervisor.exit",
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            duration_s=round(result.duration, 3),
        )
        return result

    async def _spawn(self, argv: Sequence[str], **kwargs) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(*argv, **kwargs)
        except OSError as e:
            self.log.error("supervisor.spawn_failed", exc=e, argv0=argv[0])
            raise SpawnFailedError(f"Failed to start {argv[0]}: {e}") from e

    async def _run_interactive(self, argv: Sequence[str]) -> ExecutionResult:
        start = time.monotonic()
        process = await self._spawn(argv)
        try:
            exit_code = await process.wait()
        except BaseException:
            await self._abandon(process)
            raise
        return ExecutionResult(
            stdout=INTERACTIVE_STDOUT,
            stderr="",
            exit_code=exit_code,
            duration=time.monotonic() - start,
        )

    async def _run_captured(self, argv: Sequence[str], timeout: float | None) -> ExecutionResult:
        start = time.monotonic()
        process = await self._spawn(
            argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout_task = asyncio.create_task(process.stdout.read())
        stderr_task = asyncio.create_task(process.stderr.read())

        deadline = timeout if timeout and timeout > 0 else None
        timed_out = False
        try:
            await asyncio.wait_for(process.wait(), timeout=deadline)
        except TimeoutError:
            timed_out = True
            process.kill()
            await process.wait()
            self.log.warn("supervisor.timeout", timeout_s=deadline, pid=process.pid)
        except BaseException:
            await self._abandon(process, stdout_task, stderr_task)
            raise

        stdout, stderr = await self._drain(stdout_task, stderr_task)
        duration = time.monotonic() - start

        if timed_out:
            notice = f"Process timed out after {deadline:g} seconds"
            return ExecutionResult(
                stdout=stdout,
                stderr=f"{stderr}\n{notice}" if stderr else notice,
                exit_code=None,
                duration=duration,
                timed_out=True,
            )

        return ExecutionResult(
            stdout=stdout,
            stderr=stderr,
            exit_code=process.returncode,
            duration=duration,
        )

    async def _abandon(self, process: asyncio.subprocess.Process, *tasks: asyncio.Task) -> None:
        """Kill and reap a child whose waiter was cancelled, and drop its readers."""
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.log.warn("supervisor.cancelled", pid=process.pid, exit_code=process.returncode)

    async def _drain(self, *tasks: asyncio.Task) -> tuple[str, str]:
        try:
            chunks = await asyncio.wait_for(asyncio.gather(*tasks), timeout=self.DRAIN_TIMEOUT)
        except TimeoutError:
            self.log.warn("supervisor.drain_timeout")
            chunks = [b"", b""]
        return tuple(chunk.decode(errors="replace") for chunk in chunks)

    async def syntax_check(self, script_path: Path, interpreter: str | None = None) -> str | None:
        """Compile ``script_path`` without running it.

        Returns None when the file compiles, otherwise the compiler's stderr.
        """
        resolved = self.resolve_interpreter(interpreter)
        result = await self._run_captured(
            [resolved, "-m", "py_compile", str(script_path)], self.SYNTAX_CHECK_TIMEOUT
        )
        if result.is_success:
            return None
        self.log.info("syntax.failed", script=str(script_path))
        return result.stderr.strip() or "Syntax check failed"

    async def lint_check(self, script_path: Path) -> LintResult | None:
        """Run ruff over ``script_path``. Returns None when ruff is unavailable."""
        ruff = shutil.which("ruff")
        if ruff is None:
            self.log.info("lint.unavailable", tool="ruff")
            return None

        result = await self._run_captured(
            [ruff, "check", "--output-format=concise", str(script_path)], self.LINT_TIMEOUT
        )
        if result.exit_code not in (0, 1):
            self.log.warn(
                "lint.failed",
                exit_code=result.exit_code,
                timed_out=result.timed_out,
                stderr=result.stderr[:500],
            )
            return None
        return parse_lint_output(result.stdout)


def lint_severity(code: str) -> LintSeverity:
    if code.startswith("F") or code.startswith("E9") or code == "SyntaxError":
        return LintSeverity.ERROR
    return LintSeverity.WARNING


def parse_lint_output(output: str) -> LintResult:
    """Parse ``ruff check --output-format=concise`` output."""
    diagnostics = []
    summary = ""
    for line in output.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        match = LINT_LINE_RE.match(stripped)
        if match:
            code = match.group("code")
            diagnostics.append(
                LintDiagnostic(
                    code=code,
                    message=f"{match.group('line')}:{match.group('col')}: "
                    f"{code} {match.group('message')}",
                    severity=lint_severity(code),
                )
            )
        elif stripped.startswith(("Found", "All checks passed")):
            summary = stripped
    return LintResult(diagnostics=tuple(diagnostics), summary=summary)
