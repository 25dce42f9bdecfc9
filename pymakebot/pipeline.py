"""
End-to-end flow for one user action.

generate -> extract -> store -> syntax check -> lint -> approval ->
dependency plan -> mode -> orchestrated run -> metrics. Syntax, lint and
runtime failures each offer an automatic refinement round.
"""

from collections.abc import Callable
from pathlib import Path

from .api.conversation import ConversationClient
from .api.providers import Provider
from .api.transport import TransportRetrier
from .config import AppConfig
from .errors import ExecutionError, GenerationError, SandboxError
from .extract import extract_python_code
from .log_config import SessionLog, get_logger
from .sandbox.container import ContainerRuntime
from .sandbox.dependencies import install_names, scan
from .sandbox.mode import classify
from .sandbox.orchestrator import SandboxOrchestrator
from .sandbox.supervisor import ExecutionSupervisor
from .session import ScriptStore, SessionContext
from .types import ExecutionMode, ExecutionRequest, ExecutionResult, IsolationMode

Confirm = Callable[[str], bool]
Echo = Callable[[str], None]

SYNTAX_FIX_TEMPLATE = "The code has a syntax error. Please fix it:\n{details}"
LINT_FIX_TEMPLATE = "The code has the following lint issues (from ruff). Please fix them:\n{details}"
RUNTIME_FIX_TEMPLATE = "The code crashed with this runtime error. Please fix it:\n{details}"


class CodePipeline:
    """Drive prompts through generation, checks and execution for one session."""

    MAX_AUTO_REFINES = 1

    def __init__(
        self,
        config: AppConfig,
        session: SessionContext,
        conversation: ConversationClient,
        supervisor: ExecutionSupervisor,
        orchestrator: SandboxOrchestrator,
        confirm: Confirm,
        echo: Echo = print,
    ):
        self.config = config
        self.session = session
        self.conversation = conversation
        self.supervisor = supervisor
        self.orchestrator = orchestrator
        self.confirm = confirm
        self.echo = echo
        self.log = get_logger("pipeline", model=config.model)

    @classmethod
    def from_config(
        cls, config: AppConfig, confirm: Confirm, echo: Echo = print
    ) -> "CodePipeline":
        """Wire every component from ``config``.

        Raises:
            ProviderConfigError: Unknown provider, missing URL or missing token.
        """
        provider = Provider.parse(config.provider)
        transport = TransportRetrier(
            api_url=provider.resolve_api_url(config.api_url),
            headers=provider.auth_headers(),
            policy=config.retry_policy(),
            request_timeout=config.request_timeout_secs,
        )
        conversation = ConversationClient(
            transport,
            model=config.model,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            max_history_messages=config.max_history_messages,
        )
        supervisor = ExecutionSupervisor(config.python_executable)
        orchestrator = SandboxOrchestrator(
            supervisor,
            runtime=ContainerRuntime(config.docker_image) if config.use_docker else None,
            use_venv=config.use_venv,
        )
        session = SessionContext(
            scripts=ScriptStore(config.generated_dir),
            session_log=SessionLog(config.log_dir),
        )
        return cls(config, session, conversation, supervisor, orchestrator, confirm, echo)

    async def aclose(self) -> None:
        await self.conversation.transport.aclose()

    def _session_log(self, method: str, *args) -> None:
        if self.session.session_log is not None:
            getattr(self.session.session_log, method)(*args)

    async def handle_prompt(self, prompt: str) -> ExecutionResult | None:
        """Generate code for ``prompt`` and run it. Returns None when nothing ran."""
        response = await self._generate(prompt, self.conversation.generate)
        if response is None:
            return None
        return await self._process(response, self.MAX_AUTO_REFINES)

    async def handle_refine(self, instruction: str) -> ExecutionResult | None:
        if not self.session.last_code:
            self.echo("No code to refine. Generate some code first!")
            return None
        response = await self._generate(instruction, self.conversation.refine)
        if response is None:
            return None
        return await self._process(response, self.MAX_AUTO_REFINES)

    async def run_existing(self, name: str) -> ExecutionResult | None:
        """Re-run a stored script through the dependency, mode and isolation path."""
        path = self.session.scripts.resolve(name)
        if path is None:
            self.echo(f"Script not found: {name}")
            return None
        self.echo(f"Running: {path}")
        return await self._execute(path, path.read_text(encoding="utf-8"))

    async def lint_last(self) -> None:
        if self.session.last_script is None:
            self.echo("No code to lint. Generate some code first!")
            return
        lint = await self.supervisor.lint_check(self.session.last_script)
        if lint is None:
            self.echo("ruff is not installed; skipping lint.")
        elif lint.passed:
            self.echo("Lint passed.")
        else:
            self._echo_lint(lint)

    async def _generate(self, text: str, call) -> str | None:
        self.session.metrics.total_requests += 1
        self._session_log("api_request", text)
        try:
            response = await call(self.session.history, text)
        except GenerationError as e:
            self.session.metrics.api_errors += 1
            self._session_log("error", f"API error: {e}")
            self.log.error("pipeline.generation_failed", exc=e)
            self.echo(f"API error: {e}")
            return None
        self._session_log("api_response", response)
        return response

    async def _auto_refine(
        self, kind: str, template: str, details: str, budget: int
    ) -> ExecutionResult | None:
        self.log.info("pipeline.auto_refine", kind=kind, budget=budget)
        response = await self._generate(
            template.format(details=details), self.conversation.generate
        )
        if response is None:
            return None
        return await self._process(response, budget - 1)

    async def _process(self, response: str, budget: int) -> ExecutionResult | None:
        code = extract_python_code(response)
        path = self.session.record(code)
        self.echo(f"\nGenerated code ({path}):\n{code}\n")

        syntax_error = await self.supervisor.syntax_check(path)
        if syntax_error is not None:
            self.echo(f"Syntax error detected:\n{syntax_error}")
            if budget > 0 and self.confirm("Auto-refine to fix this error?"):
                return await self._auto_refine("syntax", SYNTAX_FIX_TEMPLATE, syntax_error, budget)
            return None

        if self.config.use_linting:
            lint = await self.supervisor.lint_check(path)
            if lint is not None and not lint.passed:
                self._echo_lint(lint)
                if (
                    lint.has_errors
                    and budget > 0
                    and self.confirm("Auto-refine to fix lint errors?")
                ):
                    details = "\n".join(d.message for d in lint.diagnostics)
                    return await self._auto_refine("lint", LINT_FIX_TEMPLATE, details, budget)
                if lint.has_errors and not self.confirm("Proceed with execution anyway?"):
                    return None

        if not self.confirm("Execute this code?"):
            return None

        result = await self._execute(path, code)
        if (
            result is not None
            and not result.is_success
            and result.stderr
            and budget > 0
            and self.confirm("Auto-refine to fix this runtime error?")
        ):
            return await self._auto_refine("runtime", RUNTIME_FIX_TEMPLATE, result.stderr, budget)
        return result

    def _echo_lint(self, lint) -> None:
        self.echo("Lint issues:")
        for diagnostic in lint.diagnostics:
            self.echo(f"  [{diagnostic.severity.value}] {diagnostic.message}")
        if lint.summary:
            self.echo(lint.summary)

    async def _execute(self, path: Path, code: str) -> ExecutionResult | None:
        plan = scan(code)
        packages: tuple[str, ...] = ()
        if plan.needs_install:
            wanted = install_names(plan)
            self.echo(f"Detected non-standard packages: {', '.join(wanted)}")
            if self.config.auto_install_deps or self.confirm(
                f"Install missing packages ({', '.join(wanted)})?"
            ):
                packages = wanted

        mode = classify(code)
        request = ExecutionRequest(
            script_path=path,
            mode=mode,
            timeout=self.config.execution_timeout_secs if mode == ExecutionMode.CAPTURED else None,
            isolation=IsolationMode.CONTAINER if self.config.use_docker else IsolationMode.HOST,
            packages=packages,
        )
        if mode == ExecutionMode.INTERACTIVE:
            self.echo("Interactive program detected: running with terminal I/O (no timeout).")

        try:
            result = await self.orchestrator.run(request)
        except (ExecutionError, SandboxError) as e:
            self.session.metrics.failed_executions += 1
            self._session_log("error", f"Execution error: {e}")
            self.log.error("pipeline.execution_error", exc=e, script=str(path))
            self.echo(f"Execution error: {e}")
            return None

        if result.failed_installs:
            failed = ", ".join(result.failed_installs)
            self._session_log("error", f"Failed to install dependencies: {failed}")
            self.echo(f"Failed to install dependencies: {failed}. Ran without them.")

        self.session.metrics.record_execution(result)
        output = result.stdout if result.is_success else result.stderr
        self._session_log("execution", result.is_success, output)
        self.log.info(
            "pipeline.execution",
            script=str(path),
            mode=mode.value,
            isolation=result.isolation.value,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            failed_installs=list(result.failed_installs) or None,
        )

        if result.stdout:
            self.echo(result.stdout)
        if result.timed_out:
            self.echo(f"Timed out: {result.stderr}")
        elif result.is_success:
            self.echo("Execution succeeded.")
        else:
            self.echo(f"Execution failed (exit code {result.exit_code}):\n{result.stderr}")
        return result
