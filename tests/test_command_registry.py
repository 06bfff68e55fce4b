from __future__ import annotations

import pytest

from clipaction.commands.definition import CommandDefinition, Trigger
from clipaction.commands.registry import CommandRegistry, validate_definition
from clipaction.errors import ClipActionError, ConfigurationError, ExitCode
from clipaction.models import ClipboardItem


def _auto(name: str, **fields: object) -> CommandDefinition:
    return CommandDefinition(name=name, automatic=True, **fields)


def test_automatic_candidates_keep_user_order() -> None:
    registry = CommandRegistry(
        [
            _auto("First", command="echo 1"),
            CommandDefinition(name="MenuOnly", in_menu=True, command="echo m"),
            _auto("Second", command="echo 2", match_regex="x"),
            _auto("Third", command="echo 3"),
        ]
    )

    names = [c.definition.name for c in registry.candidates(Trigger.AUTOMATIC, ClipboardItem.from_text("x"))]

    assert names == ["First", "Second", "Third"]


def test_remove_short_circuits_automatic_chain() -> None:
    registry = CommandRegistry(
        [
            _auto("Ignore passwords", window_regex="KeePass", remove=True),
            _auto("Log", command="echo %1"),
        ]
    )

    from_vault = ClipboardItem.from_text("pw", window_title="KeePass")
    from_editor = ClipboardItem.from_text("pw", window_title="Editor")

    assert [c.definition.name for c in registry.candidates(Trigger.AUTOMATIC, from_vault)] == ["Ignore passwords"]
    assert [c.definition.name for c in registry.candidates(Trigger.AUTOMATIC, from_editor)] == ["Log"]


def test_menu_candidates_do_not_short_circuit() -> None:
    registry = CommandRegistry(
        [
            CommandDefinition(name="Drop", in_menu=True, remove=True),
            CommandDefinition(name="Upper", in_menu=True, command="tr a-z A-Z"),
        ]
    )

    names = [c.definition.name for c in registry.candidates(Trigger.MENU, ClipboardItem.from_text("x"))]

    assert names == ["Drop", "Upper"]


def test_disabled_definitions_are_skipped() -> None:
    registry = CommandRegistry([_auto("Off", command="echo", enabled=False)])

    assert registry.candidates(Trigger.AUTOMATIC, ClipboardItem.from_text("x")) == []


def test_candidates_carry_captures() -> None:
    registry = CommandRegistry([_auto("Issue", match_regex=r"#(\d+)", command="open %2")])

    (candidate,) = registry.candidates(Trigger.AUTOMATIC, ClipboardItem.from_text("see #17"))

    assert candidate.captures == ("17",)


def test_invalid_definitions_are_listed_but_never_candidates() -> None:
    reported: list[ConfigurationError] = []
    registry = CommandRegistry(
        [_auto("Broken", match_regex="(", command="echo"), _auto("Fine", command="echo")],
        error_sink=reported.append,
    )

    assert [d.name for d in registry.definitions()] == ["Broken", "Fine"]
    assert not registry.is_valid("Broken")
    assert registry.is_valid("Fine")
    assert [c.definition.name for c in registry.candidates(Trigger.AUTOMATIC, ClipboardItem.from_text("("))] == [
        "Fine"
    ]
    assert [error.command for error in reported] == ["Broken"]


def test_validate_definition_reports_every_problem() -> None:
    definition = CommandDefinition(
        name="Bad",
        match_regex="(",
        window_regex="[",
        separator="(",
        separator_is_regex=True,
        command="echo 'open",
        filter_command="a | b",
    )

    messages = [error.message for error in validate_definition(definition)]

    assert len(messages) == 5
    assert any("content regex" in message for message in messages)
    assert any("window regex" in message for message in messages)
    assert any("separator regex" in message for message in messages)
    assert any("unterminated quote" in message for message in messages)
    assert any("single program" in message for message in messages)


def test_definition_without_any_effect_is_invalid() -> None:
    messages = [error.message for error in validate_definition(CommandDefinition(name="Idle"))]

    assert messages == ["Command has no program and no effect."]


def test_empty_name_is_invalid() -> None:
    assert validate_definition(CommandDefinition(name=" ", command="echo"))[0].message == "Command name is empty."


def test_duplicate_names_are_reported() -> None:
    registry = CommandRegistry([_auto("Same", command="echo 1"), _auto("Same", command="echo 2")])

    assert [error.message for error in registry.errors()] == ["Duplicate command name: Same"]


def test_replace_swaps_definitions_and_errors() -> None:
    registry = CommandRegistry([_auto("Broken", match_regex="(", command="echo")])
    assert registry.errors()

    errors = registry.replace([_auto("Fixed", command="echo")])

    assert errors == []
    assert registry.errors() == []
    assert [d.name for d in registry.definitions()] == ["Fixed"]


def test_get_unknown_name_raises() -> None:
    with pytest.raises(ClipActionError) as exc_info:
        CommandRegistry().get("missing")

    assert exc_info.value.code == ExitCode.VALIDATION_ERROR


def test_set_enabled_updates_copy() -> None:
    registry = CommandRegistry([_auto("Toggle", command="echo")])

    updated = registry.set_enabled("Toggle", False)

    assert updated.enabled is False
    assert registry.get("Toggle").enabled is False
    assert registry.candidates(Trigger.AUTOMATIC, ClipboardItem.from_text("x")) == []
