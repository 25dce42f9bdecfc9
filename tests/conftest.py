"""Shared test helpers."""

import sys
from pathlib import Path

import httpx
import pytest

from pymakebot.config import AppConfig
from pymakebot.session import ScriptStore, SessionContext


def completion_body(content: str) -> dict:
    """A minimal chat-completion envelope."""
    return {
        "id": "chatcmpl-test",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": content}}],
    }


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ScriptedTransport:
    """Transport double returning canned completions (or raising) in order."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests = []

    async def send(self, request):
        self.requests.append(request)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, httpx.Response):
            return outcome
        return httpx.Response(200, json=completion_body(outcome))

    async def aclose(self) -> None:
        pass


def write_script(directory: Path, source: str, name: str = "script.py") -> Path:
    path = directory / name
    path.write_text(source, encoding="utf-8")
    return path


@pytest.fixture
def python() -> str:
    """The interpreter running the tests; always resolvable."""
    return sys.executable


@pytest.fixture
def session(tmp_path: Path) -> SessionContext:
    return SessionContext(scripts=ScriptStore(tmp_path / "generated"))


@pytest.fixture
def config(tmp_path: Path, python: str) -> AppConfig:
    return AppConfig(
        python_executable=python,
        use_venv=False,
        use_linting=False,
        execution_timeout_secs=10,
        generated_dir=str(tmp_path / "generated"),
        log_dir=str(tmp_path / "logs"),
    )
