"""Engine settings loading."""

from __future__ import annotations

import os
import sys
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

if sys.version_info >= (3, 11):
    import tomllib
else:  # pragma: no cover
    import tomli as tomllib

from clipaction.commands.matcher import DEFAULT_FILTER_TIMEOUT_SECONDS
from clipaction.logging import LOG_LEVELS
from clipaction.process.models import DEFAULT_MAX_CAPTURE_BYTES
from clipaction.process.supervisor import DEFAULT_GRACE_PERIOD_SECONDS, DEFAULT_MAX_RETAINED_RUNS

DEFAULT_CONFIG_PATH = Path("~/.config/clipaction/config.toml").expanduser()
DEFAULT_COMMANDS_PATH = Path("~/.config/clipaction/commands.ini")
COMMANDS_PATH_ENV = "CLIPACTION_COMMANDS"
MAX_TIMEOUT_SECONDS = 600.0


class EngineConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    filter_timeout_seconds: float = Field(default=DEFAULT_FILTER_TIMEOUT_SECONDS, gt=0, le=MAX_TIMEOUT_SECONDS)
    grace_period_seconds: float = Field(default=DEFAULT_GRACE_PERIOD_SECONDS, gt=0, le=MAX_TIMEOUT_SECONDS)
    max_capture_bytes: int = Field(default=DEFAULT_MAX_CAPTURE_BYTES, ge=1024)
    max_retained_runs: int = Field(default=DEFAULT_MAX_RETAINED_RUNS, ge=1, le=10_000)
    commands_path: str = str(DEFAULT_COMMANDS_PATH)
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in LOG_LEVELS:
            raise ValueError(f"Invalid log level: {value}")
        return "WARN" if normalized == "WARNING" else normalized

    def resolved_commands_path(self) -> Path:
        return Path(self.commands_path).expanduser()


def get_config_path(path: str | Path | None = None) -> Path:
    if path is None:
        return DEFAULT_CONFIG_PATH
    return Path(path).expanduser()


def _positive_number(value: object, *, upper: float) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if 0 < value <= upper:
        return float(value)
    return None


def _sanitize(raw: dict[str, object]) -> EngineConfig:
    cfg = EngineConfig()

    filter_timeout = _positive_number(raw.get("filter_timeout_seconds"), upper=MAX_TIMEOUT_SECONDS)
    if filter_timeout is not None:
        cfg.filter_timeout_seconds = filter_timeout

    grace_period = _positive_number(raw.get("grace_period_seconds"), upper=MAX_TIMEOUT_SECONDS)
    if grace_period is not None:
        cfg.grace_period_seconds = grace_period

    max_capture_bytes = raw.get("max_capture_bytes", cfg.max_capture_bytes)
    if isinstance(max_capture_bytes, int) and not isinstance(max_capture_bytes, bool) and max_capture_bytes >= 1024:
        cfg.max_capture_bytes = max_capture_bytes

    max_retained_runs = raw.get("max_retained_runs", cfg.max_retained_runs)
    if (
        isinstance(max_retained_runs, int)
        and not isinstance(max_retained_runs, bool)
        and 1 <= max_retained_runs <= 10_000
    ):
        cfg.max_retained_runs = max_retained_runs

    commands_path = raw.get("commands_path", cfg.commands_path)
    if isinstance(commands_path, str) and commands_path.strip():
        cfg.commands_path = commands_path.strip()
    env_commands = os.getenv(COMMANDS_PATH_ENV, "").strip()
    if env_commands:
        cfg.commands_path = env_commands

    log_level = raw.get("log_level", cfg.log_level)
    if isinstance(log_level, str) and log_level.strip().upper() in LOG_LEVELS:
        cfg.log_level = log_level

    return cfg


def load_config(path: str | Path | None = None) -> EngineConfig:
    resolved = get_config_path(path)
    if not resolved.exists():
        return _sanitize({})
    try:
        with resolved.open("rb") as handle:
            raw = tomllib.load(handle)
    except (tomllib.TOMLDecodeError, OSError):
        return _sanitize({})
    if not isinstance(raw, dict):
        return _sanitize({})
    section = raw.get("engine", raw)
    if not isinstance(section, dict):
        return _sanitize({})
    return _sanitize(section)
