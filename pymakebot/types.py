"""Type definitions for generation requests and code execution."""

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Role(str, Enum):
    """Conversation roles understood by chat-completion endpoints."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    """A single conversation turn."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    role: Role
    content: str


class GenerationRequest(BaseModel):
    """Body of one chat-completion call. One instance per API call."""

    model_config = ConfigDict(frozen=True)

    messages: tuple[Message, ...]
    model: str
    max_tokens: int
    temperature: float

    def to_payload(self) -> dict:
        return {
            "model": self.model,
            "messages": [m.model_dump() for m in self.messages],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "stream": False,
        }


class RetryPolicy(BaseModel):
    """Bounded exponential backoff with jitter.

    ``max_attempts`` counts every request, including the first one.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=4, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    jitter_fraction: float = Field(default=0.25, ge=0, le=1)

    @model_validator(mode="after")
    def _check_bounds(self) -> "RetryPolicy":
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        return self


class ExecutionMode(str, Enum):
    """How the child process is wired to the terminal."""

    CAPTURED = "captured"
    INTERACTIVE = "interactive"


class IsolationMode(str, Enum):
    """Where the script runs."""

    HOST = "host"
    CONTAINER = "container"


class SandboxState(str, Enum):
    """Lifecycle of one orchestrated execution."""

    IDLE = "idle"
    PREPARING = "preparing"
    RUNNING = "running"
    CLEANING = "cleaning"
    DONE = "done"
    FAILED = "failed"


class ExecutionRequest(BaseModel):
    """One execution, constructed fresh per run and never mutated after dispatch."""

    model_config = ConfigDict(frozen=True)

    script_path: Path
    mode: ExecutionMode = ExecutionMode.CAPTURED
    timeout: float | None = None
    isolation: IsolationMode = IsolationMode.HOST
    packages: tuple[str, ...] = ()


class ExecutionResult(BaseModel):
    """Outcome of a supervised process."""

    model_config = ConfigDict(frozen=True)

    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    duration: float = 0.0
    timed_out: bool = False
    script_path: Path | None = None
    isolation: IsolationMode = IsolationMode.HOST
    failed_installs: tuple[str, ...] = ()

    @property
    def is_success(self) -> bool:
        """True only for a process that exited with code 0."""
        return self.exit_code == 0


class DependencyPlan(BaseModel):
    """Imports found by static scanning, split into stdlib and the rest."""

    model_config = ConfigDict(frozen=True)

    detected_imports: frozenset[str] = frozenset()
    non_standard: frozenset[str] = frozenset()

    @property
    def needs_install(self) -> bool:
        return bool(self.non_standard)


class LintSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class LintDiagnostic(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    severity: LintSeverity


class LintResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    diagnostics: tuple[LintDiagnostic, ...] = ()
    summary: str = ""

    @property
    def passed(self) -> bool:
        return not self.diagnostics

    @property
    def has_errors(self) -> bool:
        return any(d.severity == LintSeverity.ERROR for d in self.diagnostics)
