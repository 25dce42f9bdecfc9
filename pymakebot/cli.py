"""Command shell: one-shot prompt or an interactive line loop."""

import argparse
import asyncio
import sys

from dotenv import find_dotenv, load_dotenv
from pydantic import ValidationError

from .api.providers import Provider
from .config import AppConfig
from .errors import ProviderConfigError, PyMakeBotError
from .log_config import configure_logging, get_logger
from .pipeline import CodePipeline

log = get_logger("cli")

BANNER = """====================================
          PYTHON MAKER BOT
====================================
 AI-Powered Python Code Generator
 Type /help for commands or /quit to exit
"""

HELP_TEXT = """Commands:
  /quit, /exit    - Exit the program
  /help           - Show this help
  /clear          - Clear conversation history
  /refine [text]  - Refine the last generated code
  /save <file>    - Save last code to a file
  /history        - Show conversation history
  /stats          - Show session statistics
  /list           - List all generated scripts
  /run <file>     - Execute a previously generated script
  /provider       - Show current LLM provider info
  /lint           - Lint the last generated code with ruff
Anything else is sent as a code-generation prompt."""

HISTORY_PREVIEW_CHARS = 100


def ask_user(question: str) -> str:
    try:
        return input(question).strip()
    except EOFError:
        return ""


def ask_yes_no(question: str) -> bool:
    return ask_user(f"{question} (y/n) : ").lower() in ("y", "yes")


class CommandShell:
    """Dispatch slash commands and prompts to the pipeline."""

    def __init__(self, pipeline: CodePipeline, ask=ask_user, echo=print):
        self.pipeline = pipeline
        self.ask = ask
        self.echo = echo

    @property
    def session(self):
        return self.pipeline.session

    async def handle(self, line: str) -> bool:
        """Process one input line. Returns False when the shell should exit."""
        line = line.strip()
        if not line:
            return True

        command, _, arg = line.partition(" ")
        arg = arg.strip()

        if command in ("/quit", "/exit"):
            self.echo("Goodbye!")
            return False
        if command == "/help":
            self.echo(HELP_TEXT)
        elif command == "/stats":
            self.echo("\n".join(self.session.metrics.summary_lines()))
        elif command == "/provider":
            self._show_provider()
        elif command == "/clear":
            self.session.clear_history()
            self.echo("Conversation history cleared.")
        elif command == "/history":
            self._show_history()
        elif command == "/save":
            self._save(arg)
        elif command == "/list":
            self._list()
        elif command == "/run":
            if not arg:
                arg = self.ask("Enter script name: ")
            if arg:
                await self.pipeline.run_existing(arg)
        elif command == "/lint":
            await self.pipeline.lint_last()
        elif command == "/refine":
            instruction = arg or self.ask("What would you like to change? ")
            if instruction:
                await self.pipeline.handle_refine(instruction)
        elif command.startswith("/"):
            self.echo(f"Unknown command: {command}. Type /help for commands.")
        else:
            await self.pipeline.handle_prompt(line)
        return True

    def _show_provider(self) -> None:
        config = self.pipeline.config
        try:
            provider = Provider.parse(config.provider)
            url = provider.resolve_api_url(config.api_url)
        except ProviderConfigError as e:
            self.echo(str(e))
            return
        self.echo(f"Provider: {provider.display_name}\nModel:    {config.model}\nAPI URL:  {url}")

    def _show_history(self) -> None:
        if not self.session.history:
            self.echo("No conversation history.")
            return
        for i, message in enumerate(self.session.history, start=1):
            content = message.content
            if len(content) > HISTORY_PREVIEW_CHARS:
                content = content[:HISTORY_PREVIEW_CHARS] + "..."
            self.echo(f"{i}. [{message.role}] {content}")

    def _save(self, filename: str) -> None:
        if not self.session.last_code:
            self.echo("No code to save. Generate some code first!")
            return
        filename = filename or self.ask("Enter filename (e.g., script.py): ")
        if not filename:
            self.echo("Save cancelled.")
            return
        try:
            with open(filename, "w", encoding="utf-8") as handle:
                handle.write(self.session.last_code)
        except OSError as e:
            self.echo(f"Failed to save file: {e}")
            return
        self.echo(f"Code saved to: {filename}")

    def _list(self) -> None:
        scripts = self.session.scripts.list()
        if not scripts:
            self.echo("No generated scripts found.")
            return
        self.echo("Generated scripts:")
        for i, path in enumerate(scripts, start=1):
            self.echo(f"  {i}. {path.name}")

    async def loop(self) -> None:
        self.echo(BANNER)
        while True:
            line = self.ask("> ")
            try:
                if not await self.handle(line):
                    break
            except PyMakeBotError as e:
                log.error("cli.command_failed", exc=e)
                self.echo(f"Error: {e}")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="pymakebot", description="Generate, check and run Python code from prompts"
    )
    parser.add_argument("--prompt", help="Run a single prompt and exit")
    parser.add_argument(
        "--yes", "-y", action="store_true", help="Answer yes to every confirmation"
    )
    return parser.parse_args(argv)


async def _run(pipeline: CodePipeline, args: argparse.Namespace) -> int:
    try:
        if args.prompt:
            result = await pipeline.handle_prompt(args.prompt)
            return 0 if result is not None and result.is_success else 1
        await CommandShell(pipeline).loop()
        return 0
    finally:
        await pipeline.aclose()


def main(argv: list[str] | None = None) -> int:
    load_dotenv(find_dotenv(usecwd=True))
    configure_logging()
    args = parse_args(argv)
    config = AppConfig.load()

    confirm = (lambda question: True) if args.yes else ask_yes_no
    try:
        pipeline = CodePipeline.from_config(config, confirm)
    except (ProviderConfigError, ValidationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    try:
        return asyncio.run(_run(pipeline, args))
    except KeyboardInterrupt:
        return 130
    except PyMakeBotError as e:
        log.error("cli.failed", exc=e)
        print(f"Error: {e}", file=sys.stderr)
        return 1
