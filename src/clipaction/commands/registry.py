"""Ordered command definitions and candidate selection."""

from __future__ import annotations

import logging as py_logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from clipaction.commands.definition import CommandDefinition, Trigger
from clipaction.commands.matcher import Matcher, MatchResult, compile_pattern, regex_flags
from clipaction.errors import ClipActionError, ConfigurationError, ExitCode
from clipaction.models import Item
from clipaction.pipeline.builder import split_stages

logger = py_logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    definition: CommandDefinition
    match: MatchResult

    @property
    def captures(self) -> tuple[str, ...]:
        return self.match.captures


def validate_definition(definition: CommandDefinition) -> list[ConfigurationError]:
    """Return every configuration problem of one definition."""
    name = definition.name
    errors: list[ConfigurationError] = []

    if not name:
        errors.append(
            ConfigurationError("Command name is empty.", hint="Give every command a unique name.")
        )

    patterns = [
        ("content regex", definition.match_regex, regex_flags(definition.match_flags)),
        ("window regex", definition.window_regex, 0),
    ]
    if definition.separator_is_regex and definition.separator:
        patterns.append(("separator regex", definition.separator, 0))
    for field, pattern, flags in patterns:
        if not pattern:
            continue
        try:
            compile_pattern(pattern, flags=flags, name=name, field=field)
        except ConfigurationError as exc:
            errors.append(exc)

    try:
        stages = split_stages(definition.command, name=name)
    except ConfigurationError as exc:
        errors.append(exc)
    else:
        if not stages and not (definition.remove or definition.copy_to_tab):
            errors.append(
                ConfigurationError(
                    "Command has no program and no effect.",
                    command=name,
                    hint="Set a command line, a tab to copy to, or mark the item for removal.",
                )
            )

    if definition.filter_command:
        try:
            filter_stages = split_stages(definition.filter_command, name=name)
        except ConfigurationError as exc:
            errors.append(exc)
        else:
            if len(filter_stages) != 1:
                errors.append(
                    ConfigurationError(
                        "Filter command must be a single program.",
                        command=name,
                        hint="Remove '|' from the filter command.",
                    )
                )
    return errors


class CommandRegistry:
    def __init__(
        self,
        definitions: Iterable[CommandDefinition] = (),
        *,
        matcher: Matcher | None = None,
        error_sink: Callable[[ConfigurationError], None] | None = None,
    ) -> None:
        self._error_sink = error_sink
        self.matcher = matcher or Matcher(error_sink=error_sink)
        self._lock = threading.RLock()
        self._definitions: list[CommandDefinition] = []
        self._errors: dict[str, list[ConfigurationError]] = {}
        self.replace(definitions)

    def replace(self, definitions: Iterable[CommandDefinition]) -> list[ConfigurationError]:
        """Swap in a new ordered definition set; returns all configuration errors."""
        loaded = list(definitions)
        errors: dict[str, list[ConfigurationError]] = {}
        seen: set[str] = set()
        for index, definition in enumerate(loaded):
            key = _error_key(definition, index)
            problems = validate_definition(definition)
            if definition.name and definition.name in seen:
                problems.append(
                    ConfigurationError(
                        f"Duplicate command name: {definition.name}",
                        command=definition.name,
                        hint="Command names must be unique.",
                    )
                )
            seen.add(definition.name)
            if problems:
                errors[key] = problems

        with self._lock:
            self._definitions = loaded
            self._errors = errors
        self.matcher.reset_reports()

        flattened = [error for problems in errors.values() for error in problems]
        for error in flattened:
            logger.error("Configuration error: %s", error)
            if self._error_sink is not None:
                self._error_sink(error)
        logger.info("Loaded %s command definitions invalid=%s", len(loaded), len(errors))
        return flattened

    def definitions(self) -> list[CommandDefinition]:
        with self._lock:
            return list(self._definitions)

    def errors(self) -> list[ConfigurationError]:
        with self._lock:
            return [error for problems in self._errors.values() for error in problems]

    def get(self, name: str) -> CommandDefinition:
        with self._lock:
            for definition in self._definitions:
                if definition.name == name:
                    return definition
        raise ClipActionError(
            f"Command not found: {name}",
            code=ExitCode.VALIDATION_ERROR,
            hint="Select an existing command.",
        )

    def is_valid(self, name: str) -> bool:
        with self._lock:
            indexes = [i for i, item in enumerate(self._definitions) if item.name == name]
            if not indexes:
                return False
            return _error_key(self._definitions[indexes[0]], indexes[0]) not in self._errors

    def set_enabled(self, name: str, enabled: bool) -> CommandDefinition:
        with self._lock:
            for index, definition in enumerate(self._definitions):
                if definition.name == name:
                    updated = definition.model_copy(update={"enabled": enabled})
                    self._definitions[index] = updated
                    logger.info("Command %s name=%s", "enabled" if enabled else "disabled", name)
                    return updated
        raise ClipActionError(
            f"Command not found: {name}",
            code=ExitCode.VALIDATION_ERROR,
            hint="Select an existing command.",
        )

    def candidates(self, trigger: Trigger, item: Item) -> list[Candidate]:
        with self._lock:
            eligible = [
                definition
                for index, definition in enumerate(self._definitions)
                if definition.enabled
                and trigger in definition.triggers
                and _error_key(definition, index) not in self._errors
            ]

        selected: list[Candidate] = []
        for definition in eligible:
            result = self.matcher.match(definition, item)
            if result is None:
                continue
            selected.append(Candidate(definition=definition, match=result))
            if trigger == Trigger.AUTOMATIC and definition.remove:
                logger.debug(
                    "Automatic chain stopped by removing command=%s item=%s",
                    definition.name,
                    item.item_id,
                )
                break
        return selected


def _error_key(definition: CommandDefinition, index: int) -> str:
    return f"{index}:{definition.name}"
