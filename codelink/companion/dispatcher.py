"""Routes parsed commands to handlers. Exactly one response per command.

Dispatch is by command class through a fixed table; every command
variant in shared/protocol.py has an entry. Nothing here raises: a
malformed payload, a disabled feature or a failing handler all become
``{"success": false, "error": ...}``.
"""
from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from typing import Any

from ..errors import DiffSessionBusyError, PolicyDeniedError, ProtocolError
from ..shared.protocol import (
    Command,
    ExecuteShellCommand,
    FocusWindowCommand,
    GetActiveTabsCommand,
    GetCompletionsCommand,
    GetContextTabsCommand,
    GetCurrentWorkspaceCommand,
    LineRange,
    OpenCommand,
    OpenFolderCommand,
    PingCommand,
    Response,
    ShowDiffCommand,
    parse_command,
)
from .context_tracker import ContextTracker
from .diff_review import DiffReview, DiffSession
from .editor import EditorBackend, path_in_folder
from .settings import FeatureSettings
from .shell import run_shell

logger = logging.getLogger(__name__)

RANGE_SEPARATOR = "\n\n// ----- Next Range ----- //\n\n"

Handler = Callable[[Any], Awaitable[Response]]


def extract_ranges(text: str, ranges: list[LineRange]) -> str:
    """Text of 1-based inclusive line ranges, joined by RANGE_SEPARATOR."""
    lines = text.split("\n")
    parts = []
    for line_range in ranges:
        start = max(0, line_range.start_line - 1)
        end = min(len(lines) - 1, line_range.end_line - 1)
        parts.append("\n".join(lines[start:end + 1]))
    return RANGE_SEPARATOR.join(parts)


class CommandDispatcher:
    """Feature gates, then the handler for the command's class."""

    def __init__(
        self,
        editor: EditorBackend,
        diff_review: DiffReview | None = None,
        context: ContextTracker | None = None,
        settings: Callable[[], FeatureSettings] = FeatureSettings,
    ) -> None:
        self._editor = editor
        self._diff_review = diff_review or DiffReview(editor)
        self._context = context or ContextTracker()
        # Called per command so edits to the settings file apply at once.
        self._settings = settings
        self._handlers: dict[type, Handler] = {
            PingCommand: self._handle_ping,
            OpenCommand: self._handle_open,
            OpenFolderCommand: self._handle_open_folder,
            ShowDiffCommand: self._handle_show_diff,
            GetCurrentWorkspaceCommand: self._handle_get_current_workspace,
            FocusWindowCommand: self._handle_focus_window,
            GetActiveTabsCommand: self._handle_get_active_tabs,
            GetContextTabsCommand: self._handle_get_context_tabs,
            ExecuteShellCommand: self._handle_execute_shell_command,
            GetCompletionsCommand: self._handle_get_completions,
        }

    @property
    def handled_types(self) -> frozenset[type]:
        return frozenset(self._handlers)

    @property
    def diff_review(self) -> DiffReview:
        return self._diff_review

    async def dispatch(
        self,
        payload: Any,
        request_id: str | None = None,
    ) -> dict[str, Any]:
        """Handle a decoded wire object and return the wire response."""
        try:
            command = parse_command(payload)
        except ProtocolError as exc:
            logger.warning("Rejecting command: %s", exc)
            return Response.fail(str(exc)).to_wire(request_id)
        response = await self.handle(command)
        return response.to_wire(request_id)

    async def handle(self, command: Command) -> Response:
        logger.debug("Received command: %s", command)
        gated = self._apply_feature_gates(command)
        if gated is not None:
            return gated

        handler = self._handlers.get(type(command))
        if handler is None:
            return Response.fail(f"Unknown command type: {command.type.value}")
        try:
            return await handler(command)
        except DiffSessionBusyError as exc:
            return Response.fail(str(exc))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Error handling %s", command.type.value)
            return Response.fail(str(exc) or type(exc).__name__)

    def _apply_feature_gates(self, command: Command) -> Response | None:
        settings = self._settings()
        if isinstance(command, ShowDiffCommand) and not settings.diffing:
            logger.info("Diffing is disabled - auto-accepting %r", command.title)
            return Response.ok(accepted=True)
        denied: PolicyDeniedError | None = None
        if isinstance(command, OpenCommand) and not settings.file_opening:
            denied = PolicyDeniedError(
                "fileOpening", "File opening is disabled in codelink settings",
            )
        elif isinstance(command, ExecuteShellCommand) and not settings.shell_commands:
            denied = PolicyDeniedError(
                "shellCommands",
                "Shell command execution is disabled in codelink settings",
            )
        if denied is not None:
            logger.info("%s", denied)
            return Response.fail(str(denied))
        return None

    # ── Handlers ──

    async def _handle_ping(self, command: PingCommand) -> Response:
        return Response.ok(alive=True)

    async def _handle_open(self, command: OpenCommand) -> Response:
        await self._editor.open_document(command.file_path, command.options)
        return Response.ok()

    async def _handle_open_folder(self, command: OpenFolderCommand) -> Response:
        await self._editor.open_folder(command.folder_path, command.new_window)
        return Response.ok()

    async def _handle_show_diff(self, command: ShowDiffCommand) -> Response:
        accepted = await self._diff_review.review(DiffSession(
            original_path=command.original_path,
            modified_path=command.modified_path,
            title=command.title,
        ))
        return Response.ok(accepted=accepted)

    async def _handle_get_current_workspace(
        self, command: GetCurrentWorkspaceCommand,
    ) -> Response:
        return Response.ok(workspaces=self._editor.workspace_folders())

    async def _handle_focus_window(self, command: FocusWindowCommand) -> Response:
        await self._editor.focus_window()
        return Response.ok()

    async def _handle_get_active_tabs(self, command: GetActiveTabsCommand) -> Response:
        tabs = self._editor.list_tabs()
        if command.include_content:
            for tab in tabs:
                try:
                    tab.content = await self._editor.read_document(tab.file_path)
                except (OSError, UnicodeDecodeError) as exc:
                    logger.warning("Could not read %s: %s", tab.file_path, exc)
        return Response.ok(tabs=[tab.to_wire() for tab in tabs])

    async def _handle_get_context_tabs(
        self, command: GetContextTabsCommand,
    ) -> Response:
        included = self._context.included_files()
        if not included and not command.selections:
            return Response.ok(tabs=[])

        candidates: list[str] = list(included)
        requested: dict[str, list[LineRange]] = {}
        for selection in command.selections:
            path = os.path.abspath(selection.file_path)
            if path not in candidates:
                candidates.append(path)
            if selection.ranges:
                requested[path] = list(selection.ranges)

        folders = self._editor.workspace_folders()
        in_workspace = [
            path for path in candidates
            if any(path_in_folder(path, folder) for folder in folders)
        ]

        open_tabs = {tab.file_path: tab for tab in self._editor.list_tabs()}
        tabs: list[dict[str, Any]] = []
        for path in in_workspace:
            try:
                text = await self._editor.read_document(path)
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("Could not load context file %s: %s", path, exc)
                continue

            open_tab = open_tabs.get(path)
            tab: dict[str, Any] = {
                "filePath": path,
                "isActive": bool(open_tab and open_tab.is_active),
                "isOpen": open_tab is not None,
                "languageId": self._editor.language_id(path),
            }
            ranges = requested.get(path) or self._context.line_ranges(path)
            if ranges:
                tab["lineRanges"] = [r.to_wire() for r in ranges]
                if command.include_content:
                    tab["selectedContent"] = extract_ranges(text, ranges)
            elif command.include_content:
                tab["content"] = text
            folder = self._editor.workspace_folder_for(path)
            if folder is not None:
                tab["workspaceFolder"] = folder
            tabs.append(tab)
        return Response.ok(tabs=tabs)

    async def _handle_execute_shell_command(
        self, command: ExecuteShellCommand,
    ) -> Response:
        result = await run_shell(command.command, command.cwd)
        return Response.ok(output=result.combined_output())

    async def _handle_get_completions(
        self, command: GetCompletionsCommand,
    ) -> Response:
        items = await self._editor.completions(
            command.file_path, command.position, command.trigger_character,
        )
        logger.debug("Found %d completions for %s", len(items), command.file_path)
        return Response.ok(completions=[item.to_wire() for item in items])
