"""Per-session state: conversation history, metrics and generated scripts."""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .log_config import SessionLog
from .types import ExecutionResult, Message


@dataclass
class SessionMetrics:
    total_requests: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    api_errors: int = 0
    timeouts: int = 0

    def record_execution(self, result: ExecutionResult) -> None:
        if result.is_success:
            self.successful_executions += 1
        else:
            self.failed_executions += 1
        if result.timed_out:
            self.timeouts += 1

    def success_rate(self) -> float:
        """Successful executions as a percentage of API requests."""
        if self.total_requests == 0:
            return 0.0
        return self.successful_executions / self.total_requests * 100

    def summary_lines(self) -> list[str]:
        return [
            f"Total requests:        {self.total_requests}",
            f"Successful executions: {self.successful_executions}",
            f"Failed executions:     {self.failed_executions}",
            f"Timeouts:              {self.timeouts}",
            f"API errors:            {self.api_errors}",
            f"Success rate:          {self.success_rate():.1f}%",
        ]


class ScriptStore:
    """Generated scripts on disk under one directory."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def write(self, code: str) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        path = self.directory / f"script_{stamp}.py"
        counter = 1
        while path.exists():
            path = self.directory / f"script_{stamp}_{counter}.py"
            counter += 1
        path.write_text(code, encoding="utf-8")
        return path

    def list(self) -> list[Path]:
        if not self.directory.is_dir():
            return []
        return sorted(p for p in self.directory.iterdir() if p.suffix == ".py" and p.is_file())

    def resolve(self, name: str) -> Path | None:
        """Find a stored script by bare file name or by a path under the directory."""
        candidate = Path(name)
        if not candidate.is_absolute() and candidate.parts[:1] != (self.directory.name,):
            candidate = self.directory / candidate
        if candidate.suffix != ".py":
            candidate = candidate.with_suffix(".py")
        return candidate if candidate.is_file() else None


@dataclass
class SessionContext:
    """Session state threaded explicitly through every pipeline call."""

    scripts: ScriptStore
    history: list[Message] = field(default_factory=list)
    metrics: SessionMetrics = field(default_factory=SessionMetrics)
    last_code: str = ""
    last_script: Path | None = None
    session_log: SessionLog | None = None

    def clear_history(self) -> None:
        self.history.clear()

    def record(self, code: str) -> Path:
        """Remember ``code`` as the latest generation and write it to the store."""
        self.last_code = code
        self.last_script = self.scripts.write(code)
        return self.last_script
