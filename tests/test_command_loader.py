from __future__ import annotations

from pathlib import Path

from clipaction.commands.loader import load_commands, parse_commands, unquote

_COMMANDS = r"""
[General]
plugin_priority=itemtext

[Commands]
size=3
1\Name=Open links
1\Match=^https?://(\S+)
1\MatchFlags=i
1\Command=curl -s %1
1\Automatic=true
1\OutputTab=links
1\Separator="\n"
1\TagCaptures=true
2\Name=Ignore passwords
2\Window=KeePass
2\Remove=true
2\Automatic=true
3\Name=Upper
3\Command="tr a-z A-Z"
3\Input=text/plain
3\Output=
3\InMenu=true
3\Enable=false
3\MaxWait=2.5
"""


def test_parse_commands_reads_numbered_entries_in_order() -> None:
    result = parse_commands(_COMMANDS)

    assert result.ok
    assert [d.name for d in result.definitions] == ["Open links", "Ignore passwords", "Upper"]

    links, passwords, upper = result.definitions
    assert links.match_regex == r"^https?://(\S+)"
    assert links.match_flags == "i"
    assert links.command == "curl -s %1"
    assert links.automatic is True
    assert links.output_tab == "links"
    assert links.separator == "\n"
    assert links.tag_with_captures is True
    assert links.output_mime == "text/plain"

    assert passwords.window_regex == "KeePass"
    assert passwords.remove is True
    assert not passwords.has_program

    assert upper.command == "tr a-z A-Z"
    assert upper.input_mime == "text/plain"
    assert upper.output_mime == ""
    assert upper.in_menu is True
    assert upper.enabled is False
    assert upper.max_wait_seconds == 2.5


def test_unquote_decodes_escapes() -> None:
    assert unquote('"a\\tb\\\\c\\"d"') == 'a\tb\\c"d'
    assert unquote("  plain  ") == "plain"
    assert unquote('"\\x"') == "\\x"


def test_missing_section_yields_nothing() -> None:
    result = parse_commands("[General]\nkey=value\n")

    assert result.ok
    assert result.definitions == []


def test_bad_boolean_rejects_only_that_command() -> None:
    result = parse_commands("[Commands]\n1\\Name=Bad\n1\\Automatic=maybe\n2\\Name=Good\n2\\Command=echo\n")

    assert [d.name for d in result.definitions] == ["Good"]
    assert len(result.errors) == 1
    assert result.errors[0].command == "Bad"


def test_invalid_field_value_is_a_configuration_error() -> None:
    result = parse_commands("[Commands]\n1\\Name=Flags\n1\\MatchFlags=q\n")

    assert result.definitions == []
    assert result.errors[0].command == "Flags"
    assert "match_flags" in result.errors[0].message


def test_unknown_keys_are_reported() -> None:
    result = parse_commands("[Commands]\n1\\Name=Odd\n1\\Command=echo\n1\\Icon=x\nstray=1\n")

    assert [d.name for d in result.definitions] == ["Odd"]
    assert len(result.errors) == 2


def test_unnamed_entry_gets_a_positional_name() -> None:
    result = parse_commands("[Commands]\n4\\Command=echo\n")

    assert result.definitions[0].name == "Command 4"


def test_broken_ini_is_reported() -> None:
    result = parse_commands("[Commands\n1\\Name=x\n", source="commands.ini")

    assert not result.ok
    assert "commands.ini" in result.errors[0].message


def test_load_commands_missing_file_is_empty(tmp_path: Path) -> None:
    result = load_commands(tmp_path / "missing.ini")

    assert result.ok
    assert result.definitions == []


def test_load_commands_reads_file(tmp_path: Path) -> None:
    path = tmp_path / "commands.ini"
    path.write_text(_COMMANDS, encoding="utf-8")

    assert len(load_commands(path).definitions) == 3
