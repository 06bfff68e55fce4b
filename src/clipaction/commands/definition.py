"""Command definition record."""

from __future__ import annotations

import shlex
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from clipaction.models import MIME_TEXT

PIPE_TOKEN = "|"
_VALID_MATCH_FLAGS = frozenset("ims")


class Trigger(str, Enum):
    AUTOMATIC = "automatic"
    MENU = "menu"


class CommandDefinition(BaseModel):
    """One user-authored automation rule.

    ``command`` is a shell-like command line where an unquoted ``|`` chains
    stages. A token list is also accepted; a bare ``"|"`` element separates
    stages and every other element is passed through as one argument.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    automatic: bool = False
    in_menu: bool = False
    enabled: bool = True

    match_regex: str = ""
    match_flags: str = ""
    window_regex: str = ""
    required_mime: str = ""
    forbidden_mime: str = ""
    filter_command: str = ""

    command: str = ""
    input_mime: str = ""
    output_mime: str = MIME_TEXT
    separator: str = ""
    separator_is_regex: bool = False
    keep_empty_segments: bool = False
    output_tab: str = ""
    copy_to_tab: str = ""

    transform: bool = False
    remove: bool = False
    tag_with_captures: bool = False
    hide_window: bool = False
    shortcut: str = ""
    wait: bool = False
    max_wait_seconds: float | None = Field(default=None, gt=0)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        return value.strip()

    @field_validator("command", mode="before")
    @classmethod
    def _join_tokens(cls, value: object) -> object:
        if isinstance(value, (list, tuple)):
            parts: list[str] = []
            for token in value:
                if not isinstance(token, str):
                    raise ValueError(f"Command tokens must be strings: {token!r}")
                parts.append(PIPE_TOKEN if token == PIPE_TOKEN else shlex.quote(token))
            return " ".join(parts)
        return value

    @field_validator("match_flags")
    @classmethod
    def _validate_flags(cls, value: str) -> str:
        normalized = "".join(sorted(set(value.strip().lower())))
        unknown = set(normalized) - _VALID_MATCH_FLAGS
        if unknown:
            raise ValueError(f"Invalid match flags: {''.join(sorted(unknown))}")
        return normalized

    @property
    def triggers(self) -> frozenset[Trigger]:
        active: set[Trigger] = set()
        if self.automatic:
            active.add(Trigger.AUTOMATIC)
        if self.in_menu:
            active.add(Trigger.MENU)
        return frozenset(active)

    @property
    def has_predicates(self) -> bool:
        return bool(
            self.match_regex
            or self.window_regex
            or self.required_mime
            or self.forbidden_mime
            or self.filter_command
        )

    @property
    def has_program(self) -> bool:
        return bool(self.command.strip())
