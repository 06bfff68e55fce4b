"""Read command definitions from the persisted INI-like format.

Commands live in one ``[Commands]`` section as a numbered array::

    [Commands]
    size=2
    1\\Name=Open links
    1\\Match=^https?://
    1\\Command=curl -s %1
    1\\Automatic=true
    1\\OutputTab=links
    2\\Name=Ignore passwords
    2\\Window=KeePass
    2\\Remove=true

Keys are case-insensitive. Values may be wrapped in double quotes, in which
case ``\\n``, ``\\t``, ``\\"`` and ``\\\\`` escapes are decoded.
"""

from __future__ import annotations

import configparser
import logging as py_logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError

from clipaction.commands.definition import CommandDefinition
from clipaction.errors import ConfigurationError

logger = py_logging.getLogger(__name__)

SECTION = "Commands"
_KEY = re.compile(r"^(\d+)\\(\w+)$")
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", '"': '"', "\\": "\\"}
_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


def _text(value: str) -> str:
    return value


def _flag(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in _TRUE:
        return True
    if normalized in _FALSE:
        return False
    raise ValueError(f"expected a boolean, got {value!r}")


def _seconds(value: str) -> float | None:
    stripped = value.strip()
    if not stripped or stripped == "0":
        return None
    return float(stripped)


_FIELDS: dict[str, tuple[str, Callable[[str], object]]] = {
    "name": ("name", _text),
    "match": ("match_regex", _text),
    "matchflags": ("match_flags", _text),
    "window": ("window_regex", _text),
    "matchcommand": ("filter_command", _text),
    "requiredmime": ("required_mime", _text),
    "forbiddenmime": ("forbidden_mime", _text),
    "command": ("command", _text),
    "input": ("input_mime", _text),
    "output": ("output_mime", _text),
    "separator": ("separator", _text),
    "separatorregex": ("separator_is_regex", _flag),
    "keepempty": ("keep_empty_segments", _flag),
    "outputtab": ("output_tab", _text),
    "tab": ("copy_to_tab", _text),
    "automatic": ("automatic", _flag),
    "inmenu": ("in_menu", _flag),
    "enable": ("enabled", _flag),
    "transform": ("transform", _flag),
    "remove": ("remove", _flag),
    "tagcaptures": ("tag_with_captures", _flag),
    "hidewindow": ("hide_window", _flag),
    "shortcut": ("shortcut", _text),
    "wait": ("wait", _flag),
    "maxwait": ("max_wait_seconds", _seconds),
}


@dataclass
class CommandLoadResult:
    definitions: list[CommandDefinition] = field(default_factory=list)
    errors: list[ConfigurationError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def unquote(value: str) -> str:
    stripped = value.strip()
    if len(stripped) < 2 or not (stripped.startswith('"') and stripped.endswith('"')):
        return stripped
    body = stripped[1:-1]
    out: list[str] = []
    index = 0
    while index < len(body):
        char = body[index]
        if char == "\\" and index + 1 < len(body):
            escaped = body[index + 1]
            out.append(_ESCAPES.get(escaped, "\\" + escaped))
            index += 2
            continue
        out.append(char)
        index += 1
    return "".join(out)


def parse_commands(text: str, *, source: str = "<string>") -> CommandLoadResult:
    parser = configparser.ConfigParser(interpolation=None, strict=True)
    try:
        parser.read_string(text, source=source)
    except configparser.Error as exc:
        return CommandLoadResult(
            errors=[
                ConfigurationError(
                    f"Cannot parse command file {source}: {exc}",
                    hint="Fix the INI syntax of the command file.",
                )
            ]
        )
    if not parser.has_section(SECTION):
        logger.debug("No [%s] section in %s", SECTION, source)
        return CommandLoadResult()

    result = CommandLoadResult()
    entries: dict[int, dict[str, str]] = {}
    for key, value in parser.items(SECTION):
        if key == "size":
            continue
        matched = _KEY.match(key)
        if matched is None:
            result.errors.append(
                ConfigurationError(f"Unrecognized key in [{SECTION}]: {key}", hint="Use N\\Key entries.")
            )
            continue
        entries.setdefault(int(matched.group(1)), {})[matched.group(2).lower()] = unquote(value)

    declared_size = parser.get(SECTION, "size", fallback="")
    if declared_size.strip().isdigit() and entries and max(entries) > int(declared_size):
        logger.warning("Command file %s declares size=%s but has %s entries", source, declared_size, max(entries))

    for index in sorted(entries):
        definition = _build_definition(index, entries[index], result.errors)
        if definition is not None:
            result.definitions.append(definition)
    logger.info(
        "Parsed command file source=%s commands=%s errors=%s",
        source,
        len(result.definitions),
        len(result.errors),
    )
    return result


def load_commands(path: str | Path) -> CommandLoadResult:
    resolved = Path(path).expanduser()
    try:
        text = resolved.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.info("Command file not found: %s", resolved)
        return CommandLoadResult()
    except OSError as exc:
        return CommandLoadResult(
            errors=[
                ConfigurationError(
                    f"Cannot read command file {resolved}: {exc.strerror or exc}",
                    hint="Check the file permissions.",
                )
            ]
        )
    return parse_commands(text, source=str(resolved))


def _build_definition(
    index: int,
    values: dict[str, str],
    errors: list[ConfigurationError],
) -> CommandDefinition | None:
    name = values.get("name", "").strip() or f"Command {index}"
    payload: dict[str, object] = {"name": name}
    for key, raw in values.items():
        target = _FIELDS.get(key)
        if target is None:
            errors.append(ConfigurationError(f"Unknown command option: {key}", command=name))
            continue
        field_name, convert = target
        try:
            payload[field_name] = convert(raw)
        except ValueError as exc:
            errors.append(ConfigurationError(f"Invalid value for {key}: {exc}", command=name))
            return None
    try:
        return CommandDefinition(**payload)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        errors.append(
            ConfigurationError(
                f"Invalid command definition: {problems}",
                command=name,
                hint="Fix the command options in the command file.",
            )
        )
        return None
