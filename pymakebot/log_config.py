"""
Structured logging for pymakebot.

Every log call emits a single JSON object on stderr:

    {"ts": ..., "level": "info", "component": "transport",
     "event": "transport.retry", "attempt": 1, "delay_s": 1.2}

Components obtain a bound logger with ``get_logger("transport", model=...)``
and log events with keyword fields. Exceptions are passed as ``exc=`` and
rendered as ``error_type``/``error`` (plus a traceback at error level).
"""

import json
import logging
import os
import sys
import time
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any

_ROOT_LOGGER_NAME = "pymakebot"
_configured = False


class JsonFormatter(logging.Formatter):
    """Render records produced by StructuredLogger as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": round(record.created, 3),
            "level": record.levelname.lower(),
            "component": getattr(record, "component", record.name),
            "event": record.getMessage(),
        }
        payload.update(getattr(record, "fields", {}))
        return json.dumps(payload, default=str)


def configure_logging(level: str | None = None) -> None:
    """Install the JSON handler on the package root logger. Safe to call repeatedly."""
    global _configured
    root = logging.getLogger(_ROOT_LOGGER_NAME)
    resolved = (level or os.environ.get("PYMAKEBOT_LOG_LEVEL", "INFO")).upper()
    root.setLevel(getattr(logging, resolved, logging.INFO))

    if _configured:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.propagate = False
    _configured = True


class StructuredLogger:
    """Thin wrapper binding a component name and context fields to every event."""

    def __init__(self, component: str, **context: Any):
        self.component = component
        self.context = context
        self._logger = logging.getLogger(f"{_ROOT_LOGGER_NAME}.{component}")

    def bind(self, **context: Any) -> "StructuredLogger":
        return StructuredLogger(self.component, **{**self.context, **context})

    def _emit(self, level: int, event: str, exc: BaseException | None, fields: dict[str, Any]):
        if not self._logger.isEnabledFor(level):
            return
        merged = {**self.context, **{k: v for k, v in fields.items() if v is not None}}
        if exc is not None:
            merged["error_type"] = type(exc).__name__
            merged["error"] = str(exc)
            if level >= logging.ERROR:
                merged["traceback"] = "".join(
                    traceback.format_exception(type(exc), exc, exc.__traceback__)
                )
        self._logger.log(level, event, extra={"component": self.component, "fields": merged})

    def debug(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._emit(logging.DEBUG, event, exc, fields)

    def info(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._emit(logging.INFO, event, exc, fields)

    def warn(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._emit(logging.WARNING, event, exc, fields)

    def error(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._emit(logging.ERROR, event, exc, fields)


def get_logger(component: str, **context: Any) -> StructuredLogger:
    """Return a StructuredLogger for ``component`` with bound context fields."""
    return StructuredLogger(component, **context)


class SessionLog:
    """
    Human-readable, append-only session log on disk.

    One file per session: ``<log_dir>/session_<YYYYmmdd_HHMMSS>.log``.
    Each line is ``[YYYY-mm-dd HH:MM:SS] MESSAGE``.
    """

    RESPONSE_PREVIEW_CHARS = 200

    def __init__(self, log_dir: str | Path):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.path = self.log_dir / f"session_{stamp}.log"

    def write(self, message: str) -> None:
        stamp = time.strftime("%Y-%m-%d %H:%M:%S")
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(f"[{stamp}] {message}\n")

    def api_request(self, prompt: str) -> None:
        self.write(f"API REQUEST: {prompt}")

    def api_response(self, response: str) -> None:
        preview = response
        if len(response) > self.RESPONSE_PREVIEW_CHARS:
            preview = response[: self.RESPONSE_PREVIEW_CHARS] + "..."
        self.write(f"API RESPONSE: {preview}")

    def execution(self, success: bool, output: str) -> None:
        status = "SUCCESS" if success else "FAILED"
        self.write(f"EXECUTION {status}: {output}")

    def error(self, message: str) -> None:
        self.write(f"ERROR: {message}")
