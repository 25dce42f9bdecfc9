"""Application configuration loaded from ``pymakebot.toml`` with environment overrides."""

import os
import tomllib
from pathlib import Path
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .log_config import get_logger
from .types import RetryPolicy

log = get_logger("config")

CONFIG_FILENAME = "pymakebot.toml"


class AppConfig(BaseModel):
    """Runtime settings. Every field has a default; config files may set any subset."""

    model_config = ConfigDict(extra="ignore")

    provider: str = "huggingface"
    model: str = "Qwen/Qwen2.5-Coder-32B-Instruct"
    api_url: str = "https://router.huggingface.co/v1/chat/completions"
    max_tokens: int = Field(default=16284, ge=1)
    temperature: float = Field(default=0.2, ge=0)

    # Transport
    max_attempts: int = Field(default=4, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    retry_jitter: float = Field(default=0.25, ge=0, le=1)
    request_timeout_secs: float = Field(default=120.0, gt=0)

    # Execution
    execution_timeout_secs: float = Field(default=30.0, ge=0)
    auto_install_deps: bool = False
    use_docker: bool = False
    use_venv: bool = True
    use_linting: bool = True
    docker_image: str = "python-sandbox"
    python_executable: str = "python3"

    # Session
    max_history_messages: int = Field(default=20, ge=0)
    log_dir: str = "logs"
    generated_dir: str = "generated"

    EXECUTION_TIMEOUT_MIN: ClassVar[float] = 0.0
    EXECUTION_TIMEOUT_MAX: ClassVar[float] = 3600.0
    REQUEST_TIMEOUT_MIN: ClassVar[float] = 5.0
    REQUEST_TIMEOUT_MAX: ClassVar[float] = 600.0

    @classmethod
    def load(cls, paths: list[Path] | None = None) -> "AppConfig":
        """Load the first parseable config file, falling back to defaults.

        Search order: ``./pymakebot.toml`` then ``~/pymakebot.toml``.
        """
        config = cls()
        for path in paths if paths is not None else cls.config_paths():
            if not path.is_file():
                continue
            try:
                with path.open("rb") as handle:
                    data = tomllib.load(handle)
                config = cls.model_validate(data)
                log.debug("config.loaded", path=str(path))
                break
            except (tomllib.TOMLDecodeError, ValidationError, OSError) as e:
                log.warn("config.parse_error", exc=e, path=str(path))
        return config.with_env_overrides()

    @staticmethod
    def config_paths() -> list[Path]:
        return [Path(CONFIG_FILENAME), Path.home() / CONFIG_FILENAME]

    def with_env_overrides(self) -> "AppConfig":
        return self.model_copy(
            update={
                "execution_timeout_secs": _resolve_seconds(
                    "PYMAKEBOT_EXECUTION_TIMEOUT",
                    default=self.execution_timeout_secs,
                    min_value=self.EXECUTION_TIMEOUT_MIN,
                    max_value=self.EXECUTION_TIMEOUT_MAX,
                ),
                "request_timeout_secs": _resolve_seconds(
                    "PYMAKEBOT_REQUEST_TIMEOUT",
                    default=self.request_timeout_secs,
                    min_value=self.REQUEST_TIMEOUT_MIN,
                    max_value=self.REQUEST_TIMEOUT_MAX,
                ),
            }
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.retry_base_delay,
            max_delay=max(self.retry_max_delay, self.retry_base_delay),
            jitter_fraction=self.retry_jitter,
        )


def _resolve_seconds(name: str, default: float, min_value: float, max_value: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        value = default
    else:
        try:
            value = float(raw)
        except ValueError:
            log.warn(
                "config.timeout_invalid",
                timeout_name=name,
                detail=f"invalid value '{raw}', using default",
            )
            value = default

    if value < min_value or value > max_value:
        clamped = min(max(value, min_value), max_value)
        log.warn(
            "config.timeout_clamped",
            timeout_name=name,
            requested=value,
            applied=clamped,
        )
        value = clamped
    return value
