"""Wire protocol shared by the server and the editor companion.

Protocol: newline-delimited JSON over TCP on 127.0.0.1.

Request:   {"id": "req_1", "type": "showDiff", "originalPath": ...}
Response:  {"id": "req_1", "success": true, "accepted": true}
Failure:   {"id": "req_1", "success": false, "error": "message"}
Channel:   {"id": "req_1", "error": {"code": -32000, "message": "..."}}

The ``id`` is optional. Requests without one are answered in order,
one response per request.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union

from ..errors import ProtocolError


class CommandType(str, Enum):
    """Discriminant values for the ``type`` field."""
    PING = "ping"
    OPEN = "open"
    OPEN_FOLDER = "openFolder"
    SHOW_DIFF = "showDiff"
    GET_CURRENT_WORKSPACE = "getCurrentWorkspace"
    FOCUS_WINDOW = "focusWindow"
    GET_ACTIVE_TABS = "getActiveTabs"
    GET_CONTEXT_TABS = "getContextTabs"
    EXECUTE_SHELL_COMMAND = "executeShellCommand"
    GET_COMPLETIONS = "getCompletions"


# ── Value types ──────────────────────────────────────────────


@dataclass(frozen=True)
class OpenOptions:
    """Display options for opening a document."""
    view_column: int | None = None
    preserve_focus: bool | None = None
    preview: bool | None = None

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {}
        if self.view_column is not None:
            wire["viewColumn"] = self.view_column
        if self.preserve_focus is not None:
            wire["preserveFocus"] = self.preserve_focus
        if self.preview is not None:
            wire["preview"] = self.preview
        return wire

    @classmethod
    def from_wire(cls, data: Any) -> OpenOptions | None:
        if data is None:
            return None
        if not isinstance(data, dict):
            raise ProtocolError("options must be an object")
        return cls(
            view_column=_optional(data, "viewColumn", int),
            preserve_focus=_optional(data, "preserveFocus", bool),
            preview=_optional(data, "preview", bool),
        )


@dataclass(frozen=True)
class LineRange:
    """Inclusive, 1-based line range."""
    start_line: int
    end_line: int

    def to_wire(self) -> dict[str, int]:
        return {"startLine": self.start_line, "endLine": self.end_line}


@dataclass(frozen=True)
class Selection:
    """Line ranges of one file requested as agent context."""
    file_path: str
    ranges: tuple[LineRange, ...] = ()

    def to_wire(self) -> dict[str, Any]:
        return {
            "filePath": self.file_path,
            "ranges": [r.to_wire() for r in self.ranges],
        }

    @classmethod
    def from_wire(cls, data: Any) -> Selection:
        if not isinstance(data, dict):
            raise ProtocolError("selection must be an object")
        raw_ranges = data.get("ranges") or []
        if not isinstance(raw_ranges, list):
            raise ProtocolError("selection ranges must be a list")
        ranges = []
        for item in raw_ranges:
            if not isinstance(item, dict):
                raise ProtocolError("line range must be an object")
            ranges.append(LineRange(
                start_line=_required(item, "startLine", int),
                end_line=_required(item, "endLine", int),
            ))
        return cls(
            file_path=_required(data, "filePath", str),
            ranges=tuple(ranges),
        )


@dataclass(frozen=True)
class Position:
    """Zero-based cursor position."""
    line: int
    character: int

    def to_wire(self) -> dict[str, int]:
        return {"line": self.line, "character": self.character}


# ── Commands ─────────────────────────────────────────────────


@dataclass(frozen=True)
class PingCommand:
    type: ClassVar[CommandType] = CommandType.PING

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.type.value}


@dataclass(frozen=True)
class OpenCommand:
    file_path: str
    options: OpenOptions | None = None
    type: ClassVar[CommandType] = CommandType.OPEN

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {
            "type": self.type.value,
            "filePath": self.file_path,
        }
        if self.options is not None:
            wire["options"] = self.options.to_wire()
        return wire


@dataclass(frozen=True)
class OpenFolderCommand:
    folder_path: str
    new_window: bool = False
    type: ClassVar[CommandType] = CommandType.OPEN_FOLDER

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "folderPath": self.folder_path,
            "newWindow": self.new_window,
        }


@dataclass(frozen=True)
class ShowDiffCommand:
    original_path: str
    modified_path: str
    title: str
    type: ClassVar[CommandType] = CommandType.SHOW_DIFF

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "originalPath": self.original_path,
            "modifiedPath": self.modified_path,
            "title": self.title,
        }


@dataclass(frozen=True)
class GetCurrentWorkspaceCommand:
    type: ClassVar[CommandType] = CommandType.GET_CURRENT_WORKSPACE

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.type.value}


@dataclass(frozen=True)
class FocusWindowCommand:
    type: ClassVar[CommandType] = CommandType.FOCUS_WINDOW

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.type.value}


@dataclass(frozen=True)
class GetActiveTabsCommand:
    include_content: bool = False
    type: ClassVar[CommandType] = CommandType.GET_ACTIVE_TABS

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.type.value, "includeContent": self.include_content}


@dataclass(frozen=True)
class GetContextTabsCommand:
    include_content: bool = False
    selections: tuple[Selection, ...] = ()
    type: ClassVar[CommandType] = CommandType.GET_CONTEXT_TABS

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {
            "type": self.type.value,
            "includeContent": self.include_content,
        }
        if self.selections:
            wire["selections"] = [s.to_wire() for s in self.selections]
        return wire


@dataclass(frozen=True)
class ExecuteShellCommand:
    command: str
    cwd: str | None = None
    type: ClassVar[CommandType] = CommandType.EXECUTE_SHELL_COMMAND

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {"type": self.type.value, "command": self.command}
        if self.cwd:
            wire["cwd"] = self.cwd
        return wire


@dataclass(frozen=True)
class GetCompletionsCommand:
    file_path: str
    position: Position
    trigger_character: str | None = None
    type: ClassVar[CommandType] = CommandType.GET_COMPLETIONS

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {
            "type": self.type.value,
            "filePath": self.file_path,
            "position": self.position.to_wire(),
        }
        if self.trigger_character is not None:
            wire["triggerCharacter"] = self.trigger_character
        return wire


Command = Union[
    PingCommand,
    OpenCommand,
    OpenFolderCommand,
    ShowDiffCommand,
    GetCurrentWorkspaceCommand,
    FocusWindowCommand,
    GetActiveTabsCommand,
    GetContextTabsCommand,
    ExecuteShellCommand,
    GetCompletionsCommand,
]

COMMAND_CLASSES: tuple[type, ...] = (
    PingCommand,
    OpenCommand,
    OpenFolderCommand,
    ShowDiffCommand,
    GetCurrentWorkspaceCommand,
    FocusWindowCommand,
    GetActiveTabsCommand,
    GetContextTabsCommand,
    ExecuteShellCommand,
    GetCompletionsCommand,
)


def parse_command(payload: Any) -> Command:
    """Build a command value from a decoded wire object.

    Raises ProtocolError for unknown types and missing or mistyped fields.
    """
    if not isinstance(payload, dict):
        raise ProtocolError("Command must be a JSON object")
    raw_type = payload.get("type")
    try:
        command_type = CommandType(raw_type)
    except ValueError:
        raise ProtocolError(f"Unknown command type: {raw_type}") from None

    if command_type is CommandType.PING:
        return PingCommand()
    if command_type is CommandType.OPEN:
        return OpenCommand(
            file_path=_required(payload, "filePath", str),
            options=OpenOptions.from_wire(payload.get("options")),
        )
    if command_type is CommandType.OPEN_FOLDER:
        return OpenFolderCommand(
            folder_path=_required(payload, "folderPath", str),
            new_window=bool(_optional(payload, "newWindow", bool) or False),
        )
    if command_type is CommandType.SHOW_DIFF:
        return ShowDiffCommand(
            original_path=_required(payload, "originalPath", str),
            modified_path=_required(payload, "modifiedPath", str),
            title=_required(payload, "title", str),
        )
    if command_type is CommandType.GET_CURRENT_WORKSPACE:
        return GetCurrentWorkspaceCommand()
    if command_type is CommandType.FOCUS_WINDOW:
        return FocusWindowCommand()
    if command_type is CommandType.GET_ACTIVE_TABS:
        return GetActiveTabsCommand(
            include_content=bool(_optional(payload, "includeContent", bool)),
        )
    if command_type is CommandType.GET_CONTEXT_TABS:
        raw_selections = payload.get("selections") or []
        if not isinstance(raw_selections, list):
            raise ProtocolError("selections must be a list")
        return GetContextTabsCommand(
            include_content=bool(_optional(payload, "includeContent", bool)),
            selections=tuple(Selection.from_wire(s) for s in raw_selections),
        )
    if command_type is CommandType.EXECUTE_SHELL_COMMAND:
        return ExecuteShellCommand(
            command=_required(payload, "command", str),
            cwd=_optional(payload, "cwd", str) or None,
        )
    # Only getCompletions is left.
    raw_position = payload.get("position")
    if not isinstance(raw_position, dict):
        raise ProtocolError("Missing required field: position")
    return GetCompletionsCommand(
        file_path=_required(payload, "filePath", str),
        position=Position(
            line=_required(raw_position, "line", int),
            character=_required(raw_position, "character", int),
        ),
        trigger_character=_optional(payload, "triggerCharacter", str),
    )


# ── Responses ────────────────────────────────────────────────


@dataclass
class Response:
    """Handler result: success flag, optional error, variant fields."""
    success: bool
    error: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **data: Any) -> Response:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, **data: Any) -> Response:
        return cls(success=False, error=error, data=data)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def to_wire(self, request_id: str | None = None) -> dict[str, Any]:
        wire: dict[str, Any] = {}
        if request_id is not None:
            wire["id"] = request_id
        wire["success"] = self.success
        if self.error is not None:
            wire["error"] = self.error
        for key, value in self.data.items():
            wire.setdefault(key, value)
        return wire

    @classmethod
    def from_wire(cls, message: dict[str, Any]) -> Response:
        data = {
            k: v for k, v in message.items()
            if k not in ("id", "success", "error")
        }
        error = message.get("error")
        if error is not None and not isinstance(error, str):
            error = str(error)
        success = message.get("success")
        if success is None:
            success = error is None
        return cls(success=bool(success), error=error, data=data)


# ── Framing ──────────────────────────────────────────────────


def encode_message(message: dict[str, Any]) -> bytes:
    """Serialize one message as a newline-terminated JSON line."""
    return json.dumps(message).encode("utf-8") + b"\n"


def split_frames(buffer: bytes) -> tuple[list[bytes], bytes]:
    """Split a byte buffer into complete lines and the unterminated rest.

    Blank lines are dropped.
    """
    if b"\n" not in buffer:
        return [], buffer
    *lines, remainder = buffer.split(b"\n")
    return [line for line in lines if line.strip()], remainder


# ── Internal helpers ─────────────────────────────────────────


def _required(data: dict[str, Any], key: str, kind: type) -> Any:
    if key not in data or data[key] is None:
        raise ProtocolError(f"Missing required field: {key}")
    return _check_type(key, data[key], kind)


def _optional(data: dict[str, Any], key: str, kind: type) -> Any:
    value = data.get(key)
    if value is None:
        return None
    return _check_type(key, value, kind)


def _check_type(key: str, value: Any, kind: type) -> Any:
    # bool is a subclass of int; reject it where a number is expected.
    if kind is int and isinstance(value, bool):
        raise ProtocolError(f"Field {key} must be an integer")
    if not isinstance(value, kind):
        raise ProtocolError(f"Field {key} must be of type {kind.__name__}")
    return value
