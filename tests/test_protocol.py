from __future__ import annotations

import json

import pytest

from codelink.errors import ProtocolError
from codelink.shared.protocol import (
    COMMAND_CLASSES,
    CommandType,
    ExecuteShellCommand,
    GetCompletionsCommand,
    GetContextTabsCommand,
    LineRange,
    OpenCommand,
    OpenFolderCommand,
    OpenOptions,
    PingCommand,
    Response,
    ShowDiffCommand,
    encode_message,
    parse_command,
    split_frames,
)


def test_every_command_type_has_a_class() -> None:
    assert {cls.type for cls in COMMAND_CLASSES} == set(CommandType)


def test_parse_show_diff_uses_snake_case_attributes() -> None:
    command = parse_command({
        "type": "showDiff",
        "originalPath": "/p/a.py",
        "modifiedPath": "/tmp/x.py",
        "title": "Refactor",
    })

    assert command == ShowDiffCommand("/p/a.py", "/tmp/x.py", "Refactor")


def test_show_diff_requires_title() -> None:
    with pytest.raises(ProtocolError, match="Missing required field: title"):
        parse_command({
            "type": "showDiff", "originalPath": "/a", "modifiedPath": "/b",
        })


def test_unknown_type_is_named_in_error() -> None:
    with pytest.raises(ProtocolError, match="Unknown command type: explode"):
        parse_command({"type": "explode"})


def test_non_object_payload_rejected() -> None:
    with pytest.raises(ProtocolError):
        parse_command(["ping"])


def test_wrong_field_type_rejected() -> None:
    with pytest.raises(ProtocolError, match="filePath"):
        parse_command({"type": "open", "filePath": 3})


def test_bool_is_not_accepted_as_line_number() -> None:
    with pytest.raises(ProtocolError):
        parse_command({
            "type": "getCompletions",
            "filePath": "/a.py",
            "position": {"line": True, "character": 0},
        })


def test_open_options_round_trip_through_wire() -> None:
    command = OpenCommand("/p/a.py", OpenOptions(view_column=2, preview=False))
    wire = command.to_wire()

    assert wire == {
        "type": "open",
        "filePath": "/p/a.py",
        "options": {"viewColumn": 2, "preview": False},
    }
    assert parse_command(wire) == command


def test_context_tabs_selections_parsed() -> None:
    command = parse_command({
        "type": "getContextTabs",
        "includeContent": True,
        "selections": [{
            "filePath": "/p/a.py",
            "ranges": [{"startLine": 1, "endLine": 3}],
        }],
    })

    assert isinstance(command, GetContextTabsCommand)
    assert command.include_content is True
    assert command.selections[0].ranges == (LineRange(1, 3),)


def test_optional_fields_default() -> None:
    assert parse_command({"type": "openFolder", "folderPath": "/p"}) == (
        OpenFolderCommand("/p", new_window=False)
    )
    assert parse_command({"type": "executeShellCommand", "command": "ls"}) == (
        ExecuteShellCommand("ls", cwd=None)
    )
    completions = parse_command({
        "type": "getCompletions",
        "filePath": "/a.py",
        "position": {"line": 0, "character": 4},
    })
    assert isinstance(completions, GetCompletionsCommand)
    assert completions.trigger_character is None


def test_response_wire_puts_id_first_and_flattens_data() -> None:
    wire = Response.ok(accepted=True).to_wire("req_7")

    assert list(wire) == ["id", "success", "accepted"]
    assert wire == {"id": "req_7", "success": True, "accepted": True}


def test_response_from_wire_infers_success_from_error() -> None:
    assert Response.from_wire({"id": "req_1", "alive": True}).success is True
    failed = Response.from_wire({"error": "nope"})
    assert failed.success is False
    assert failed.error == "nope"


def test_encode_message_is_one_line() -> None:
    data = encode_message(PingCommand().to_wire())

    assert data.endswith(b"\n")
    assert data.count(b"\n") == 1
    assert json.loads(data) == {"type": "ping"}


def test_split_frames_keeps_partial_tail_and_drops_blank_lines() -> None:
    lines, rest = split_frames(b'{"a":1}\n\n{"b":2}\n{"c"')

    assert lines == [b'{"a":1}', b'{"b":2}']
    assert rest == b'{"c"'


def test_split_frames_without_newline_returns_everything_as_rest() -> None:
    assert split_frames(b'{"a":1}') == ([], b'{"a":1}')
