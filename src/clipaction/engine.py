"""Command engine entry points used by the clipboard monitor and menus."""

from __future__ import annotations

import logging as py_logging
from collections.abc import Callable, Sequence
from typing import Protocol

from clipaction.commands.definition import CommandDefinition, Trigger
from clipaction.commands.matcher import Matcher, MatchResult
from clipaction.commands.registry import Candidate, CommandRegistry
from clipaction.config import EngineConfig
from clipaction.errors import ClipActionError, ConfigurationError, ExitCode
from clipaction.models import MIME_TEXT, Item
from clipaction.output.router import ItemMutation, MutationKind, OutputRouter
from clipaction.pipeline.builder import build
from clipaction.process.models import ProcessState, RunHandle, RunSnapshot
from clipaction.process.runner import ConfirmPrompt, ProcessRunner
from clipaction.process.supervisor import ProcessSupervisor

logger = py_logging.getLogger(__name__)

AD_HOC_COMMAND_NAME = "action"
ShutdownPrompt = Callable[[int], bool]


class MutationSink(Protocol):
    """History store side; called from runner worker threads."""

    def apply_mutations(self, mutations: Sequence[ItemMutation], destination_tab: str) -> None: ...


class CommandEngine:
    def __init__(
        self,
        registry: CommandRegistry,
        runner: ProcessRunner,
        sink: MutationSink,
        *,
        router: OutputRouter | None = None,
        on_hide_window: Callable[[], None] | None = None,
    ) -> None:
        self.registry = registry
        self.runner = runner
        self.router = router or OutputRouter()
        self._sink = sink
        self._on_hide_window = on_hide_window

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self.runner.supervisor

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        definitions: Sequence[CommandDefinition],
        sink: MutationSink,
        *,
        confirm: ConfirmPrompt | None = None,
        error_sink: Callable[[ConfigurationError], None] | None = None,
        on_hide_window: Callable[[], None] | None = None,
    ) -> CommandEngine:
        registry = CommandRegistry(
            definitions,
            matcher=Matcher(config.filter_timeout_seconds, error_sink=error_sink),
            error_sink=error_sink,
        )
        supervisor = ProcessSupervisor(
            grace_period_seconds=config.grace_period_seconds,
            max_retained_runs=config.max_retained_runs,
        )
        runner = ProcessRunner(supervisor, max_capture_bytes=config.max_capture_bytes, confirm=confirm)
        return cls(registry, runner, sink, on_hide_window=on_hide_window)

    def on_clipboard_item(self, item: Item) -> list[RunHandle]:
        """Run every automatic command that matches a newly captured item."""
        candidates = self.registry.candidates(Trigger.AUTOMATIC, item)
        logger.debug("Automatic candidates item=%s count=%s", item.item_id, len(candidates))
        handles: list[RunHandle] = []
        for candidate in candidates:
            self._apply_side_effects(candidate.definition, item)
            handle = self._launch(candidate, item)
            if handle is not None:
                handles.append(handle)
        return handles

    def menu_commands(self, item: Item) -> list[CommandDefinition]:
        return [candidate.definition for candidate in self.registry.candidates(Trigger.MENU, item)]

    def invoke(self, name: str, item: Item) -> RunHandle | None:
        """Run one command chosen from the menu or by shortcut."""
        definition = self.registry.get(name)
        if not self.registry.is_valid(name):
            raise ClipActionError(
                f"Command has configuration errors: {name}",
                code=ExitCode.CONFIG_ERROR,
                hint="Fix the command in the command editor.",
            )
        if not definition.enabled:
            logger.info("Ignoring disabled command=%s", name)
            return None
        match = self.registry.matcher.match(definition, item)
        if match is None:
            logger.info("Command does not match item command=%s item=%s", name, item.item_id)
            return None
        self._apply_side_effects(definition, item)
        return self._launch(Candidate(definition=definition, match=match), item)

    def action(
        self,
        item: Item,
        command: str,
        *,
        separator: str = "\n",
        output_tab: str = "",
    ) -> RunHandle | None:
        """Run an ad-hoc command on the item text and split its output into items."""
        definition = CommandDefinition(
            name=AD_HOC_COMMAND_NAME,
            command=command,
            input_mime=MIME_TEXT,
            separator=separator,
            output_tab=output_tab,
        )
        return self._launch(Candidate(definition=definition, match=MatchResult()), item)

    def shutdown(self, confirm: ShutdownPrompt | None = None) -> bool:
        """Stop every run before exit; returns False if the user keeps the app open."""
        running = self.supervisor.running()
        if running and confirm is not None and not confirm(len(running)):
            logger.info("Shutdown declined with running=%s", len(running))
            return False
        self.supervisor.shutdown()
        return True

    def _apply_side_effects(self, definition: CommandDefinition, item: Item) -> None:
        if definition.copy_to_tab:
            self._deliver(
                [ItemMutation(kind=MutationKind.COPY, tab=definition.copy_to_tab, item_id=item.item_id)],
                definition.copy_to_tab,
            )
        if definition.remove:
            self._deliver([ItemMutation(kind=MutationKind.REMOVE, tab=item.tab, item_id=item.item_id)], item.tab)

    def _launch(self, candidate: Candidate, item: Item) -> RunHandle | None:
        definition = candidate.definition
        if not definition.has_program:
            return None
        spec = build(definition, item, candidate.captures)

        def _on_complete(snapshot: RunSnapshot) -> None:
            self._route(definition, snapshot)

        handle = self.runner.run(spec, on_complete=_on_complete)
        if definition.hide_window and self._on_hide_window is not None:
            self._on_hide_window()
        return handle

    def _route(self, definition: CommandDefinition, snapshot: RunSnapshot) -> None:
        if snapshot.state != ProcessState.FINISHED:
            logger.info(
                "Run ended run=%s command=%s state=%s message=%s",
                snapshot.run_id,
                snapshot.command_name,
                snapshot.state.value,
                snapshot.message,
            )
        mutations = self.router.route(definition, snapshot)
        if mutations:
            self._deliver(mutations, mutations[0].tab)

    def _deliver(self, mutations: list[ItemMutation], tab: str) -> None:
        try:
            self._sink.apply_mutations(mutations, tab)
        except Exception:
            logger.exception("Mutation sink failed tab=%s count=%s", tab, len(mutations))
