"""Application logging helpers."""

from __future__ import annotations

import logging as py_logging
import sys
from collections.abc import Mapping, MutableMapping
from pathlib import Path
from typing import Any, TextIO

LOG_LEVELS = {
    "DEBUG": py_logging.DEBUG,
    "INFO": py_logging.INFO,
    "WARN": py_logging.WARNING,
    "WARNING": py_logging.WARNING,
    "ERROR": py_logging.ERROR,
}
ROOT_LOGGER = "clipaction"
DEFAULT_LOG_PATH = Path("~/.config/clipaction/logs/clipaction.log")
_FALLBACK_LOG_PATH = Path(".clipaction/logs/clipaction.log")
_FORMAT = "%(asctime)s %(levelname)s %(name)s:%(lineno)d %(threadName)s %(message)s"


def default_log_path() -> Path:
    try:
        resolved = DEFAULT_LOG_PATH.expanduser()
    except RuntimeError:
        resolved = (Path.cwd() / _FALLBACK_LOG_PATH).resolve()
    else:
        if not resolved.is_absolute():
            resolved = resolved.resolve()
    return resolved


def resolve_level(level: str) -> int:
    normalized = level.strip().upper()
    if normalized == "WARNING":
        normalized = "WARN"
    return LOG_LEVELS.get(normalized, py_logging.INFO)


def configure_logging(
    level: str = "INFO",
    stream: TextIO | None = None,
    *,
    log_file: str | Path | None = None,
) -> py_logging.Logger:
    resolved = resolve_level(level)

    logger = py_logging.getLogger(ROOT_LOGGER)
    logger.setLevel(min(resolved, py_logging.DEBUG) if log_file else resolved)
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    formatter = py_logging.Formatter(_FORMAT)

    handler = py_logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(resolved)
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    if log_file:
        try:
            log_path = Path(log_file).expanduser()
        except RuntimeError:
            log_path = Path(log_file)
        if not log_path.is_absolute():
            log_path = log_path.resolve()
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = py_logging.FileHandler(log_path, encoding="utf-8")
        except OSError:
            logger.setLevel(resolved)
        else:
            file_handler.setLevel(py_logging.DEBUG)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    logger.propagate = False
    return logger


class RunLogger(py_logging.LoggerAdapter):
    """Prefix every record with the run id and command name of one pipeline."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra: Mapping[str, object] = self.extra or {}
        return f"run-event run={extra.get('run_id', '-')} command={extra.get('command', '-')} {msg}", kwargs


def run_logger(logger: py_logging.Logger, *, run_id: str, command: str) -> RunLogger:
    return RunLogger(logger, {"run_id": run_id, "command": command})
