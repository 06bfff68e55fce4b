"""Deterministic error model and exit code contract."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class ExitCode(IntEnum):
    SUCCESS = 0
    INVALID_ARGS = 2
    CONFIG_ERROR = 3
    RUNTIME_ERROR = 4
    SPAWN_ERROR = 5
    STAGE_FAILURE = 6
    VALIDATION_ERROR = 7


@dataclass
class ClipActionError(Exception):
    message: str
    code: ExitCode = ExitCode.RUNTIME_ERROR
    hint: str = ""

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} Hint: {self.hint}"
        return self.message


@dataclass
class ConfigurationError(ClipActionError):
    """Bad regex or malformed pipeline syntax in a command definition."""

    code: ExitCode = ExitCode.CONFIG_ERROR
    command: str = ""

    def __str__(self) -> str:
        text = super().__str__()
        if self.command:
            return f"[{self.command}] {text}"
        return text


@dataclass
class SpawnError(ClipActionError):
    code: ExitCode = ExitCode.SPAWN_ERROR
    command: str = ""


@dataclass
class StageFailure(ClipActionError):
    code: ExitCode = ExitCode.STAGE_FAILURE
    command: str = ""
    exit_code: int = 1


def user_facing_error(message: str, *, hint: str = "") -> str:
    if hint:
        return f"Error: {message}. Next step: {hint}"
    return f"Error: {message}."
