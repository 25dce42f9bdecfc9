"""Exception hierarchy for transport, generation, execution and sandbox failures."""


class PyMakeBotError(Exception):
    """Base class for all pymakebot errors."""


class ProviderConfigError(PyMakeBotError):
    """Raised when the configured provider cannot be used (unknown name, missing URL/token)."""


# Transport


class TransportError(PyMakeBotError):
    """A single request to the generation endpoint failed."""

    retryable = False

    def __init__(self, message: str, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class NetworkError(TransportError):
    """Connection refused, DNS failure, read timeout and similar."""

    retryable = True


class RateLimitedError(TransportError):
    """HTTP 429."""

    retryable = True


class ServerError(TransportError):
    """HTTP 5xx."""

    retryable = True


class ClientError(TransportError):
    """HTTP 4xx other than 429. Never retried."""


class RetriesExhaustedError(TransportError):
    """Every allowed attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_error: TransportError):
        super().__init__(
            f"Request failed after {attempts} attempt(s): {last_error}",
            status_code=last_error.status_code,
            body=last_error.body,
        )
        self.attempts = attempts
        self.last_error = last_error


# Generation


class GenerationError(PyMakeBotError):
    """Code generation or refinement did not produce a response."""


class TransportGenerationError(GenerationError):
    """The transport layer gave up; the original TransportError is chained as __cause__."""

    def __init__(self, error: TransportError):
        super().__init__(str(error))
        self.transport_error = error


class MalformedResponseError(GenerationError):
    """The endpoint answered 2xx but the body is not a usable chat-completion envelope."""


# Execution


class ExecutionError(PyMakeBotError):
    """The script could not be run at all."""


class InterpreterNotFoundError(ExecutionError):
    """Neither the primary nor the fallback interpreter name resolves."""


class SpawnFailedError(ExecutionError):
    """The interpreter exists but the child process could not be started."""


# Sandbox


class SandboxError(PyMakeBotError):
    """Isolation runtime failure."""


class RuntimeUnavailableError(SandboxError):
    """The container CLI or daemon is not reachable. Recovered by host fallback."""


class InstanceCreateFailedError(SandboxError):
    """The container runtime is reachable but refused to create the instance."""


class NetworkIsolationError(SandboxError):
    """The install network could not be detached from the instance; the script is not run."""
