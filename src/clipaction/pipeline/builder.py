"""Translate a matched command definition into a runnable pipeline description."""

from __future__ import annotations

import re
import shlex
from collections.abc import Sequence
from dataclasses import dataclass

from clipaction.commands.definition import CommandDefinition
from clipaction.errors import ConfigurationError
from clipaction.models import Item, is_text_mime

MAX_PLACEHOLDERS = 9
_PLACEHOLDER = re.compile(r"%([1-9])")
_DOUBLE_QUOTE_ESCAPES = frozenset('"\\$`')


@dataclass(frozen=True)
class StageSpec:
    argv: tuple[str, ...]

    @property
    def executable(self) -> str:
        return self.argv[0]

    @property
    def arguments(self) -> tuple[str, ...]:
        return self.argv[1:]


@dataclass(frozen=True)
class InputPayload:
    data: bytes
    mime: str


@dataclass(frozen=True)
class PipelineSpec:
    command_name: str
    stages: tuple[StageSpec, ...]
    input: InputPayload | None = None
    captures: tuple[str, ...] = ()
    substitutions: tuple[str, ...] = ()
    item_id: str = ""
    source_tab: str = ""
    confirm_before_run: bool = False
    max_wait_seconds: float | None = None

    def describe(self) -> str:
        return " | ".join(shlex.join(stage.argv) for stage in self.stages)


def split_stages(command: str, *, name: str = "") -> list[tuple[str, ...]]:
    """Tokenize ``command`` and split it on unquoted, unescaped pipes.

    Quoting follows POSIX shell rules for single quotes, double quotes and
    backslash escapes. An empty command yields no stages.
    """
    stages: list[tuple[str, ...]] = []
    current: list[str] = []
    token: list[str] = []
    in_token = False
    quote = ""
    index = 0
    length = len(command)

    def flush() -> None:
        nonlocal in_token
        if in_token:
            current.append("".join(token))
            token.clear()
            in_token = False

    while index < length:
        char = command[index]
        if quote == "'":
            if char == "'":
                quote = ""
            else:
                token.append(char)
        elif quote == '"':
            if char == '"':
                quote = ""
            elif char == "\\" and index + 1 < length and command[index + 1] in _DOUBLE_QUOTE_ESCAPES:
                index += 1
                token.append(command[index])
            else:
                token.append(char)
        elif char == "\\":
            if index + 1 >= length:
                raise ConfigurationError(
                    "Command ends with a dangling escape character.",
                    command=name,
                    hint="Remove the trailing backslash or escape it.",
                )
            index += 1
            token.append(command[index])
            in_token = True
        elif char in "'\"":
            quote = char
            in_token = True
        elif char == "|":
            flush()
            if not current:
                raise ConfigurationError(
                    "Command pipeline contains an empty stage.",
                    command=name,
                    hint="Put a program on both sides of every '|'.",
                )
            stages.append(tuple(current))
            current = []
        elif char.isspace():
            flush()
        else:
            token.append(char)
            in_token = True
        index += 1

    if quote:
        raise ConfigurationError(
            "Command contains an unterminated quote.",
            command=name,
            hint=f"Close the {quote} quote.",
        )
    flush()
    if current:
        stages.append(tuple(current))
    elif stages:
        raise ConfigurationError(
            "Command pipeline ends with '|'.",
            command=name,
            hint="Remove the trailing pipe or add a final program.",
        )
    return stages


def build_substitutions(text: str, captures: Sequence[str] = ()) -> tuple[str, ...]:
    """Values for ``%1``..``%9``: item text first, then capture groups."""
    values = [text]
    values.extend(captures[: MAX_PLACEHOLDERS - 1])
    values.extend([""] * (MAX_PLACEHOLDERS - len(values)))
    return tuple(value or "" for value in values)


def interpolate(value: str, substitutions: Sequence[str]) -> str:
    return _PLACEHOLDER.sub(lambda match: substitutions[int(match.group(1)) - 1], value)


def resolve_input(
    definition: CommandDefinition,
    item: Item,
    substitutions: Sequence[str],
) -> InputPayload | None:
    mime = definition.input_mime.strip()
    if not mime:
        return None
    data = item.representation(mime)
    if data is None:
        return None
    if is_text_mime(mime):
        text = data.decode("utf-8", errors="replace")
        data = interpolate(text, substitutions).encode("utf-8")
    return InputPayload(data=data, mime=mime)


def build(
    definition: CommandDefinition,
    item: Item,
    captures: Sequence[str] = (),
) -> PipelineSpec:
    stages = split_stages(definition.command, name=definition.name)
    if not stages:
        raise ConfigurationError(
            "Command has no program to run.",
            command=definition.name,
            hint="Set a command line for this definition.",
        )
    substitutions = build_substitutions(item.primary_text() or "", captures)
    return PipelineSpec(
        command_name=definition.name,
        stages=tuple(
            StageSpec(argv=tuple(interpolate(argument, substitutions) for argument in stage))
            for stage in stages
        ),
        input=resolve_input(definition, item, substitutions),
        captures=tuple(captures),
        substitutions=substitutions,
        item_id=item.item_id,
        source_tab=item.tab,
        confirm_before_run=definition.wait,
        max_wait_seconds=definition.max_wait_seconds,
    )
