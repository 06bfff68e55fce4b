"""Public CLI contract and entrypoint."""

from __future__ import annotations

import argparse
import json
import logging as py_logging
import sys
import threading
from collections.abc import Sequence
from pathlib import Path
from typing import TextIO

from .commands.loader import load_commands, unquote
from .commands.registry import CommandRegistry
from .config import EngineConfig, load_config
from .engine import CommandEngine
from .errors import ClipActionError, ExitCode, user_facing_error
from .logging import configure_logging, default_log_path
from .models import ClipboardItem, is_text_mime
from .output.router import ItemMutation
from .process.models import ProcessState

_VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARN", "ERROR")
DEFAULT_RUN_TIMEOUT_SECONDS = 60.0


def _log_level_type(value: str) -> str:
    normalized = value.upper()
    if normalized == "WARNING":
        normalized = "WARN"
    if normalized not in _VALID_LOG_LEVELS:
        accepted = ", ".join(_VALID_LOG_LEVELS)
        raise argparse.ArgumentTypeError(f"--log-level must be one of: {accepted}")
    return normalized


def _timeout_type(value: str) -> float:
    try:
        seconds = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("--timeout must be a number") from exc
    if seconds <= 0:
        raise argparse.ArgumentTypeError("--timeout must be positive")
    return seconds


def _separator_type(value: str) -> str:
    return unquote(f'"{value}"')


class CollectingSink:
    """Mutation sink that keeps everything it receives, in order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._mutations: list[ItemMutation] = []

    def apply_mutations(self, mutations: Sequence[ItemMutation], destination_tab: str) -> None:
        del destination_tab
        with self._lock:
            self._mutations.extend(mutations)

    @property
    def mutations(self) -> list[ItemMutation]:
        with self._lock:
            return list(self._mutations)


def _add_item_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--text", default=None, help="Item text (default: read stdin)")
    parser.add_argument("--tab", default="clipboard")
    parser.add_argument("--window-title", default=None)
    parser.add_argument("--timeout", type=_timeout_type, default=DEFAULT_RUN_TIMEOUT_SECONDS)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="clipaction")
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("--commands", type=Path, default=None)
    parser.add_argument("--log-level", type=_log_level_type, default=None)
    parser.add_argument("--log-file", type=Path, default=None)
    subparsers = parser.add_subparsers(dest="action", required=True)

    subparsers.add_parser("check", help="Validate the command file")

    run_parser = subparsers.add_parser("run", help="Run commands on one clipboard item")
    _add_item_arguments(run_parser)
    run_parser.add_argument("--menu", metavar="NAME", default=None, help="Invoke one menu command")

    action_parser = subparsers.add_parser("action", help="Run PROGRAM on the item text")
    _add_item_arguments(action_parser)
    action_parser.add_argument("program")
    action_parser.add_argument("separator", nargs="?", type=_separator_type, default="\n")
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = build_parser()
    return parser.parse_args(argv)


def _mutation_to_dict(mutation: ItemMutation) -> dict[str, object]:
    payload: dict[str, object] = {
        "kind": mutation.kind.value,
        "tab": mutation.tab,
        "mime": mutation.mime,
        "item_id": mutation.item_id,
        "tags": list(mutation.tags),
    }
    if is_text_mime(mutation.mime):
        payload["text"] = mutation.text
    else:
        payload["size"] = len(mutation.data)
    return payload


def run_check(commands_path: Path, stdout: TextIO) -> int:
    loaded = load_commands(commands_path)
    registry = CommandRegistry(loaded.definitions)
    errors = loaded.errors + registry.errors()
    for error in errors:
        message = f"{error.command}: {error.message}" if error.command else error.message
        print(user_facing_error(message.rstrip("."), hint=error.hint), file=stdout)
    print(f"{len(loaded.definitions)} commands, {len(errors)} errors", file=stdout)
    return int(ExitCode.CONFIG_ERROR if errors else ExitCode.SUCCESS)


def run_item(
    namespace: argparse.Namespace,
    config: EngineConfig,
    commands_path: Path,
    stdin: TextIO,
    stdout: TextIO,
) -> int:
    text = namespace.text if namespace.text is not None else stdin.read()
    item = ClipboardItem.from_text(text, tab=namespace.tab, window_title=namespace.window_title)
    sink = CollectingSink()

    if namespace.action == "action":
        engine = CommandEngine.from_config(config, [], sink)
        engine.action(item, namespace.program, separator=namespace.separator)
    else:
        loaded = load_commands(commands_path)
        engine = CommandEngine.from_config(config, loaded.definitions, sink)
        if namespace.menu:
            engine.invoke(namespace.menu, item)
        else:
            engine.on_clipboard_item(item)

    if not engine.supervisor.wait_all(namespace.timeout):
        py_logging.getLogger(__name__).warning("Runs still active after %ss; cancelling", namespace.timeout)
    engine.shutdown()

    runs = engine.supervisor.list()
    report = {
        "item_id": item.item_id,
        "runs": [snapshot.to_dict() for snapshot in runs],
        "mutations": [_mutation_to_dict(mutation) for mutation in sink.mutations],
    }
    print(json.dumps(report, indent=2, ensure_ascii=False), file=stdout)
    if any(snapshot.state != ProcessState.FINISHED for snapshot in runs):
        return int(ExitCode.RUNTIME_ERROR)
    return int(ExitCode.SUCCESS)


def main(
    argv: Sequence[str] | None = None,
    *,
    stdin: TextIO | None = None,
    stdout: TextIO | None = None,
) -> int:
    parser = build_parser()
    try:
        namespace = parser.parse_args(argv)
    except SystemExit as exc:
        return int(exc.code or 0)

    config = load_config(namespace.config)
    log_path = namespace.log_file.expanduser() if namespace.log_file is not None else default_log_path()
    logger = configure_logging(level=namespace.log_level or config.log_level, log_file=log_path)
    commands_path = namespace.commands.expanduser() if namespace.commands else config.resolved_commands_path()
    out = stdout or sys.stdout

    try:
        if namespace.action == "check":
            return run_check(commands_path, out)
        return run_item(namespace, config, commands_path, stdin or sys.stdin, out)
    except ClipActionError as exc:
        logger.error(
            "Handled ClipActionError (code=%s): %s",
            int(exc.code),
            exc.message,
            exc_info=logger.isEnabledFor(py_logging.DEBUG),
        )
        print(user_facing_error(exc.message, hint=exc.hint), file=sys.stderr)
        return int(exc.code)
    except Exception:
        logger.exception("Unhandled exception in CLI entrypoint")
        try:
            hint = f"Inspect logs: {log_path}"
            print(user_facing_error("Unexpected runtime failure", hint=hint), file=sys.stderr)
        except Exception:
            pass
        return int(ExitCode.RUNTIME_ERROR)


def run(argv: Sequence[str] | None = None) -> int:
    return main(argv)
