"""Tests for session state."""

from pathlib import Path

import pytest

from pymakebot.session import ScriptStore, SessionContext, SessionMetrics
from pymakebot.types import ExecutionResult, Message, Role


class TestSessionMetrics:
    def test_success_rate_without_requests(self):
        assert SessionMetrics().success_rate() == 0.0

    def test_success_rate(self):
        metrics = SessionMetrics(total_requests=4, successful_executions=3)
        assert metrics.success_rate() == pytest.approx(75.0)

    def test_record_execution(self):
        metrics = SessionMetrics()
        metrics.record_execution(ExecutionResult(exit_code=0))
        metrics.record_execution(ExecutionResult(exit_code=1))
        metrics.record_execution(ExecutionResult(exit_code=None, timed_out=True))

        assert metrics.successful_executions == 1
        assert metrics.failed_executions == 2
        assert metrics.timeouts == 1

    def test_summary_lines(self):
        lines = SessionMetrics(total_requests=2, successful_executions=1).summary_lines()
        assert "Success rate:          50.0%" in lines


class TestScriptStore:
    def test_write_names_scripts_by_timestamp(self, tmp_path: Path):
        store = ScriptStore(tmp_path / "generated")

        path = store.write("print(1)\n")

        assert path.parent == tmp_path / "generated"
        assert path.name.startswith("script_")
        assert path.suffix == ".py"
        assert path.read_text() == "print(1)\n"

    def test_consecutive_writes_do_not_collide(self, tmp_path: Path):
        store = ScriptStore(tmp_path)
        paths = {store.write(f"print({i})") for i in range(5)}
        assert len(paths) == 5

    def test_list_sorted_python_files_only(self, tmp_path: Path):
        (tmp_path / "b.py").write_text("")
        (tmp_path / "a.py").write_text("")
        (tmp_path / "notes.txt").write_text("")
        store = ScriptStore(tmp_path)

        assert [p.name for p in store.list()] == ["a.py", "b.py"]

    def test_list_missing_directory(self, tmp_path: Path):
        assert ScriptStore(tmp_path / "nope").list() == []

    def test_resolve(self, tmp_path: Path):
        store = ScriptStore(tmp_path)
        path = store.write("print(1)")

        assert store.resolve(path.name) == path
        assert store.resolve(path.stem) == path
        assert store.resolve(str(path)) == path
        assert store.resolve("missing.py") is None


class TestSessionContext:
    def test_record_sets_last_code_and_script(self, session: SessionContext):
        path = session.record("x = 1\n")

        assert session.last_code == "x = 1\n"
        assert session.last_script == path
        assert path.read_text() == "x = 1\n"

    def test_clear_history(self, session: SessionContext):
        session.history.append(Message(role=Role.USER, content="hi"))
        session.clear_history()
        assert session.history == []
