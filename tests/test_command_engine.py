from __future__ import annotations

from collections.abc import Callable, Sequence

import pytest

from clipaction.commands.definition import CommandDefinition
from clipaction.commands.registry import CommandRegistry
from clipaction.config import EngineConfig
from clipaction.engine import CommandEngine
from clipaction.errors import ClipActionError, ConfigurationError
from clipaction.models import ClipboardItem
from clipaction.output.router import ItemMutation, MutationKind
from clipaction.pipeline.builder import PipelineSpec
from clipaction.process.models import RunHandle, RunSnapshot
from clipaction.process.runner import ProcessRunner
from clipaction.process.supervisor import ProcessSupervisor


class _Sink:
    def __init__(self) -> None:
        self.calls: list[tuple[list[ItemMutation], str]] = []

    def apply_mutations(self, mutations: Sequence[ItemMutation], destination_tab: str) -> None:
        self.calls.append((list(mutations), destination_tab))

    @property
    def mutations(self) -> list[ItemMutation]:
        return [mutation for batch, _ in self.calls for mutation in batch]


class _ScriptedRunner:
    """Completes every pipeline synchronously with canned output."""

    def __init__(self, outputs: dict[str, bytes] | None = None, *, fail: bool = False) -> None:
        self.supervisor = ProcessSupervisor(grace_period_seconds=0.05)
        self.outputs = outputs or {}
        self.fail = fail
        self.specs: list[PipelineSpec] = []

    def run(self, spec: PipelineSpec, *, on_complete: Callable[[RunSnapshot], None] | None = None) -> RunHandle:
        self.specs.append(spec)
        handle = RunHandle(spec.command_name, item_id=spec.item_id, source_tab=spec.source_tab, captures=spec.captures)
        self.supervisor.register(handle)
        handle.mark_running()
        if self.fail:
            handle.fail("Stage 1 (curl) exited with code 6.", exit_code=6)
        else:
            handle.append_stdout(self.outputs.get(spec.command_name, b""))
            handle.finish(0)
        handle.seal()
        if on_complete is not None:
            on_complete(handle.snapshot())
        handle.mark_done()
        return handle


def _engine(definitions: list[CommandDefinition], runner: _ScriptedRunner, sink: _Sink, **kwargs) -> CommandEngine:
    return CommandEngine(CommandRegistry(definitions), runner, sink, **kwargs)  # type: ignore[arg-type]


def test_curl_scenario_routes_output_into_links_tab() -> None:
    runner = _ScriptedRunner({"Fetch": b"<html>ok</html>"})
    sink = _Sink()
    engine = _engine(
        [
            CommandDefinition(
                name="Fetch",
                automatic=True,
                match_regex=r"^https?://",
                command="curl -s %1",
                output_tab="links",
            )
        ],
        runner,
        sink,
    )

    handles = engine.on_clipboard_item(ClipboardItem.from_text("https://example.com", tab="clipboard"))

    assert len(handles) == 1
    assert [stage.argv for stage in runner.specs[0].stages] == [("curl", "-s", "https://example.com")]
    (mutation,) = sink.mutations
    assert mutation.kind == MutationKind.CREATE
    assert mutation.tab == "links"
    assert mutation.text == "<html>ok</html>"
    assert sink.calls[0][1] == "links"


def test_failed_run_creates_no_items() -> None:
    runner = _ScriptedRunner(fail=True)
    sink = _Sink()
    engine = _engine([CommandDefinition(name="Fetch", automatic=True, command="curl -s %1")], runner, sink)

    engine.on_clipboard_item(ClipboardItem.from_text("https://example.com"))

    assert sink.calls == []


def test_remove_short_circuit_removes_item_and_skips_later_commands() -> None:
    runner = _ScriptedRunner()
    sink = _Sink()
    engine = _engine(
        [
            CommandDefinition(name="Ignore passwords", automatic=True, window_regex="KeePass", remove=True),
            CommandDefinition(name="Log", automatic=True, command="logger %1"),
        ],
        runner,
        sink,
    )
    item = ClipboardItem.from_text("hunter2", tab="clipboard", window_title="KeePass")

    handles = engine.on_clipboard_item(item)

    assert handles == []
    assert runner.specs == []
    (mutation,) = sink.mutations
    assert mutation.kind == MutationKind.REMOVE
    assert mutation.item_id == item.item_id
    assert mutation.tab == "clipboard"


def test_copy_to_tab_is_applied_before_the_run() -> None:
    runner = _ScriptedRunner({"Archive": b"done"})
    sink = _Sink()
    engine = _engine(
        [CommandDefinition(name="Archive", automatic=True, copy_to_tab="archive", command="echo", output_mime="")],
        runner,
        sink,
    )
    item = ClipboardItem.from_text("keep me")

    engine.on_clipboard_item(item)

    (mutation,) = sink.mutations
    assert mutation.kind == MutationKind.COPY
    assert mutation.tab == "archive"
    assert mutation.item_id == item.item_id


def test_menu_commands_lists_matching_menu_definitions() -> None:
    engine = _engine(
        [
            CommandDefinition(name="Upper", in_menu=True, command="tr a-z A-Z"),
            CommandDefinition(name="Links only", in_menu=True, match_regex="^http", command="curl %1"),
            CommandDefinition(name="Auto", automatic=True, command="echo"),
        ],
        _ScriptedRunner(),
        _Sink(),
    )

    assert [d.name for d in engine.menu_commands(ClipboardItem.from_text("text"))] == ["Upper"]


def test_invoke_runs_transform_on_matching_item() -> None:
    runner = _ScriptedRunner({"Upper": b"TEXT"})
    sink = _Sink()
    engine = _engine(
        [CommandDefinition(name="Upper", in_menu=True, command="tr a-z A-Z", input_mime="text/plain", transform=True)],
        runner,
        sink,
    )
    item = ClipboardItem.from_text("text", tab="notes")

    handle = engine.invoke("Upper", item)

    assert handle is not None
    assert runner.specs[0].input is not None
    (mutation,) = sink.mutations
    assert mutation.kind == MutationKind.REPLACE
    assert mutation.item_id == item.item_id
    assert mutation.tab == "notes"
    assert mutation.text == "TEXT"


def test_invoke_returns_none_for_disabled_or_non_matching() -> None:
    engine = _engine(
        [
            CommandDefinition(name="Off", in_menu=True, command="echo", enabled=False),
            CommandDefinition(name="Links", in_menu=True, match_regex="^http", command="echo"),
        ],
        _ScriptedRunner(),
        _Sink(),
    )
    item = ClipboardItem.from_text("plain")

    assert engine.invoke("Off", item) is None
    assert engine.invoke("Links", item) is None


def test_invoke_unknown_or_invalid_command_raises() -> None:
    engine = _engine(
        [CommandDefinition(name="Broken", in_menu=True, match_regex="(", command="echo")],
        _ScriptedRunner(),
        _Sink(),
    )

    with pytest.raises(ClipActionError):
        engine.invoke("Missing", ClipboardItem.from_text("x"))
    with pytest.raises(ClipActionError):
        engine.invoke("Broken", ClipboardItem.from_text("x"))


def test_hide_window_hook_runs_after_launch() -> None:
    hidden: list[bool] = []
    engine = _engine(
        [CommandDefinition(name="Paste", in_menu=True, command="xdotool type %1", hide_window=True)],
        _ScriptedRunner(),
        _Sink(),
        on_hide_window=lambda: hidden.append(True),
    )

    engine.invoke("Paste", ClipboardItem.from_text("x"))

    assert hidden == [True]


def test_action_splits_output_on_separator() -> None:
    runner = _ScriptedRunner({"action": b"one,two,,three"})
    sink = _Sink()
    engine = _engine([], runner, sink)

    engine.action(ClipboardItem.from_text("input", tab="clipboard"), "cut -d, -f1-", separator=",")

    assert runner.specs[0].input is not None
    assert runner.specs[0].input.data == b"input"
    assert [m.text for m in sink.mutations] == ["one", "two", "three"]
    assert {m.tab for m in sink.mutations} == {"clipboard"}


def test_action_with_malformed_command_raises() -> None:
    engine = _engine([], _ScriptedRunner(), _Sink())

    with pytest.raises(ConfigurationError):
        engine.action(ClipboardItem.from_text("x"), "echo 'open")


def test_sink_failure_is_logged_not_raised() -> None:
    class _BrokenSink:
        def apply_mutations(self, mutations: Sequence[ItemMutation], destination_tab: str) -> None:
            raise RuntimeError("store closed")

    engine = CommandEngine(
        CommandRegistry([CommandDefinition(name="Drop", automatic=True, remove=True)]),
        _ScriptedRunner(),  # type: ignore[arg-type]
        _BrokenSink(),
    )

    assert engine.on_clipboard_item(ClipboardItem.from_text("x")) == []


def test_shutdown_prompt_can_abort() -> None:
    runner = _ScriptedRunner()
    live = RunHandle("Live")
    live.bind_controls(cancel=live.mark_done, kill=live.mark_done)
    live.mark_running()
    runner.supervisor.register(live)
    engine = _engine([], runner, _Sink())
    prompts: list[int] = []

    def decline(count: int) -> bool:
        prompts.append(count)
        return False

    assert engine.shutdown(decline) is False
    assert not runner.supervisor.closed
    assert engine.shutdown(lambda count: True) is True
    assert runner.supervisor.closed
    assert prompts == [1]


def test_from_config_wires_real_components() -> None:
    config = EngineConfig(grace_period_seconds=1.5, max_capture_bytes=2048, max_retained_runs=3)

    engine = CommandEngine.from_config(config, [CommandDefinition(name="Echo", command="echo")], _Sink())

    assert isinstance(engine.runner, ProcessRunner)
    assert engine.supervisor.grace_period_seconds == 1.5
    assert engine.supervisor.max_retained_runs == 3
    assert engine.runner.max_capture_bytes == 2048
    assert [d.name for d in engine.registry.definitions()] == ["Echo"]
