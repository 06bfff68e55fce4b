"""Predicate evaluation for command definitions."""

from __future__ import annotations

import logging as py_logging
import re
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass

from clipaction.commands.definition import CommandDefinition
from clipaction.errors import ConfigurationError
from clipaction.models import Item
from clipaction.pipeline.builder import build_substitutions, interpolate, split_stages

logger = py_logging.getLogger(__name__)

DEFAULT_FILTER_TIMEOUT_SECONDS = 5.0
_FLAG_BITS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}

ErrorSink = Callable[[ConfigurationError], None]


@dataclass(frozen=True)
class MatchResult:
    captures: tuple[str, ...] = ()


def regex_flags(letters: str) -> int:
    flags = 0
    for letter in letters:
        flags |= _FLAG_BITS.get(letter, 0)
    return flags


def compile_pattern(pattern: str, *, flags: int = 0, name: str = "", field: str = "regex") -> re.Pattern[str]:
    try:
        return re.compile(pattern, flags)
    except re.error as exc:
        raise ConfigurationError(
            f"Invalid {field} {pattern!r}: {exc}",
            command=name,
            hint="Fix the regular expression in the command settings.",
        ) from exc


class Matcher:
    def __init__(
        self,
        filter_timeout_seconds: float = DEFAULT_FILTER_TIMEOUT_SECONDS,
        *,
        error_sink: ErrorSink | None = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self.filter_timeout_seconds = filter_timeout_seconds
        self._error_sink = error_sink
        self._runner = runner
        self._reported: set[tuple[str, str]] = set()
        self._lock = threading.Lock()

    def matches(self, definition: CommandDefinition, item: Item) -> bool:
        return self.match(definition, item) is not None

    def match(self, definition: CommandDefinition, item: Item) -> MatchResult | None:
        if definition.required_mime and item.representation(definition.required_mime) is None:
            return None
        if definition.forbidden_mime and item.representation(definition.forbidden_mime) is not None:
            return None

        try:
            captures = self._match_content(definition, item)
            if captures is None:
                return None
            if not self._match_window(definition, item):
                return None
        except ConfigurationError as exc:
            self._report(exc)
            return None

        if definition.filter_command and not self._run_filter(definition, item, captures):
            return None
        return MatchResult(captures=captures)

    def _match_content(self, definition: CommandDefinition, item: Item) -> tuple[str, ...] | None:
        if not definition.match_regex:
            return ()
        pattern = compile_pattern(
            definition.match_regex,
            flags=regex_flags(definition.match_flags),
            name=definition.name,
            field="content regex",
        )
        found = pattern.search(item.primary_text() or "")
        if found is None:
            return None
        return tuple(group or "" for group in found.groups())

    def _match_window(self, definition: CommandDefinition, item: Item) -> bool:
        if not definition.window_regex:
            return True
        pattern = compile_pattern(definition.window_regex, name=definition.name, field="window regex")
        return pattern.search(item.source_window_title() or "") is not None

    def _run_filter(self, definition: CommandDefinition, item: Item, captures: tuple[str, ...]) -> bool:
        text = item.primary_text() or ""
        try:
            stages = split_stages(definition.filter_command, name=definition.name)
        except ConfigurationError as exc:
            self._report(exc)
            return False
        if len(stages) != 1:
            self._report(
                ConfigurationError(
                    "Filter command must be a single program.",
                    command=definition.name,
                    hint="Remove '|' from the filter command.",
                )
            )
            return False

        substitutions = build_substitutions(text, captures)
        argv = [interpolate(argument, substitutions) for argument in stages[0]]
        logger.debug("Running filter command=%s argv=%s", definition.name, argv)
        try:
            completed = self._runner(
                argv,
                input=text.encode("utf-8"),
                capture_output=True,
                timeout=self.filter_timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.warning(
                "Filter timed out command=%s timeout=%ss; treating as no match",
                definition.name,
                self.filter_timeout_seconds,
            )
            return False
        except OSError as exc:
            logger.warning("Filter failed to start command=%s error=%s", definition.name, exc)
            return False
        return completed.returncode == 0

    def _report(self, error: ConfigurationError) -> None:
        key = (error.command, error.message)
        with self._lock:
            if key in self._reported:
                return
            self._reported.add(key)
        logger.error("Configuration error: %s", error)
        if self._error_sink is not None:
            self._error_sink(error)

    def reset_reports(self) -> None:
        with self._lock:
            self._reported.clear()
