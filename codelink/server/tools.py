"""Editor operations exposed to the agent.

Every tool returns a plain string. Failures are explained in the text
rather than raised, so the agent can read what went wrong and react.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from ..errors import (
    ChannelError,
    CodelinkError,
    DiscoveryError,
    RegistryNotFoundError,
)
from ..shared.protocol import (
    ExecuteShellCommand,
    GetActiveTabsCommand,
    GetCompletionsCommand,
    GetContextTabsCommand,
    LineRange,
    OpenCommand,
    OpenFolderCommand,
    OpenOptions,
    Position,
    Selection,
    ShowDiffCommand,
)
from .channel_pool import ChannelPool

logger = logging.getLogger(__name__)

INVALID_PROJECT_PATH = (
    "I need a valid project directory path. Please provide the full "
    "targetProjectPath (the complete path to your project directory). The "
    "path you provided is missing, empty, or appears to be invalid."
)
EDITOR_NOT_RUNNING = (
    "The editor does not appear to be running. Please start it and open "
    "your project folder, then try again."
)
DIFF_ACCEPTED = "Changes were accepted and applied to the file."
DIFF_REJECTED = (
    "Changes were rejected. You should stop executing at this point and "
    "ask clarifying questions to understand why this change was rejected."
)
NO_DIFF_TIMEOUT = 0.0


def is_valid_project_path(target_project_path: str | None) -> bool:
    """Reject empty, ".", "/" and implausibly short project paths."""
    if not target_project_path or not isinstance(target_project_path, str):
        return False
    stripped = target_project_path.strip()
    return stripped not in ("", ".", "/") and len(target_project_path) >= 3


def _absolute(path: str) -> str:
    return os.path.abspath(os.path.expanduser(path))


class EditorTools:
    """Tool implementations backed by a ChannelPool."""

    def __init__(self, pool: ChannelPool) -> None:
        self._pool = pool

    # ── Diff review ──

    async def create_diff(
        self,
        file_path: str,
        new_content: str,
        target_project_path: str,
        description: str | None = None,
    ) -> str:
        """Show proposed content as a diff; apply it only if accepted."""
        if not is_valid_project_path(target_project_path):
            return INVALID_PROJECT_PATH
        original = Path(_absolute(file_path))
        if not original.is_file():
            return (
                "Cannot perform diff because the target file does not "
                f"exist: {file_path}"
            )

        temp_path: Path | None = None
        try:
            temp_path = self._write_temp(new_content, original.suffix)
            command = ShowDiffCommand(
                original_path=str(original),
                modified_path=str(temp_path),
                title=description or "Previewing Changes",
            )
            # The user may take as long as they like to decide.
            response = await self._pool.request(
                target_project_path, command, timeout=NO_DIFF_TIMEOUT,
            )
            if not response.success:
                return f"Error applying file changes: {response.error}"
            if response.get("accepted"):
                original.write_text(
                    temp_path.read_text(encoding="utf-8"), encoding="utf-8",
                )
                logger.info("Applied accepted changes to %s", original)
                return DIFF_ACCEPTED
            logger.info("Changes to %s were rejected", original)
            return DIFF_REJECTED
        except (CodelinkError, OSError) as exc:
            logger.error("Error applying file changes to %s: %s", file_path, exc)
            return f"Error applying file changes: {exc}"
        finally:
            if temp_path is not None:
                try:
                    temp_path.unlink()
                except FileNotFoundError:
                    pass
                except OSError as exc:
                    logger.warning("Could not remove temp file %s: %s", temp_path, exc)

    @staticmethod
    def _write_temp(content: str, suffix: str) -> Path:
        fd, name = tempfile.mkstemp(prefix="codelink-diff-", suffix=suffix)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        return Path(name)

    # ── Opening files and projects ──

    async def open_file(
        self,
        file_path: str,
        target_project_path: str,
        view_column: int | None = None,
        preserve_focus: bool | None = None,
        preview: bool = False,
    ) -> str:
        if not is_valid_project_path(target_project_path):
            return INVALID_PROJECT_PATH
        absolute = _absolute(file_path)
        if not os.path.isfile(absolute):
            return f"Error: File does not exist: {absolute}"
        command = OpenCommand(
            file_path=absolute,
            options=OpenOptions(
                view_column=view_column,
                preserve_focus=preserve_focus,
                preview=preview,
            ),
        )
        try:
            response = await self._pool.request(target_project_path, command)
        except DiscoveryError as exc:
            return f"Could not connect to the editor companion: {exc}"
        except (ChannelError, OSError) as exc:
            return f"Error opening file: {exc}"
        if not response.success:
            return f"Error opening file: {response.error}"
        return f"Successfully opened file: {file_path}"

    async def open_project(self, project_path: str, new_window: bool = True) -> str:
        """Open a folder in any running editor instance."""
        absolute = _absolute(project_path)
        if not os.path.isdir(absolute):
            return f"Error: Project directory does not exist: {absolute}"
        try:
            port = self._pool.any_port()
        except RegistryNotFoundError:
            return EDITOR_NOT_RUNNING
        command = OpenFolderCommand(folder_path=absolute, new_window=new_window)
        try:
            response = await self._pool.request_port(port, command)
        except (ChannelError, OSError) as exc:
            return f"Error opening project: {exc}"
        if not response.success:
            return f"Error opening project: {response.error}"
        where = "new" if new_window else "current"
        return f"Successfully opened project in a {where} editor window: {project_path}"

    # ── Discovery ──

    async def check_extension_status(self, target_project_path: str) -> str:
        if not is_valid_project_path(target_project_path):
            return INVALID_PROJECT_PATH
        try:
            channel = await self._pool.channel_for(target_project_path)
            if not channel.is_connected:
                await channel.connect()
        except (CodelinkError, OSError) as exc:
            logger.info("Companion status check failed: %s", exc)
            return "Editor companion is not installed or not running"
        if await channel.ping():
            return "Editor companion is installed and responding"
        return f"Editor companion on port {channel.port} did not answer a ping"

    async def get_extension_port(self, target_project_path: str) -> str:
        if not is_valid_project_path(target_project_path):
            return INVALID_PROJECT_PATH
        try:
            channel = await self._pool.channel_for(target_project_path)
        except DiscoveryError:
            return "Could not find extension port for the specified project path"
        try:
            if not channel.is_connected:
                await channel.connect()
        except (ChannelError, OSError) as exc:
            return f"Could not connect to extension: {exc}"
        return (
            f"Extension port: {channel.port} found matching the Project Path: "
            f"{target_project_path}"
        )

    async def list_available_projects(self) -> str:
        try:
            registry = self._pool.load_registry()
        except RegistryNotFoundError:
            registry = {}
        if not registry:
            return (
                "No editor projects found. Please make sure the editor "
                "companion is running and you have at least one project open."
            )
        listing = "\n".join(
            f"{index}. {path}" for index, path in enumerate(registry, start=1)
        )
        return (
            f"Available projects:\n\n{listing}\n\nPlease choose one of these "
            "projects. Whichever project you choose will be used as your "
            "Project Path (i.e. targetProjectPath) in subsequent tool calls."
        )

    # ── Context ──

    async def get_active_tabs(
        self, target_project_path: str, include_content: bool = False,
    ) -> str:
        if not is_valid_project_path(target_project_path):
            return INVALID_PROJECT_PATH
        command = GetActiveTabsCommand(include_content=include_content)
        return await self._tabs_text(target_project_path, command, "active tabs")

    async def get_context_tabs(
        self,
        target_project_path: str,
        include_content: bool = False,
        selections: list[dict[str, Any]] | None = None,
    ) -> str:
        if not is_valid_project_path(target_project_path):
            return INVALID_PROJECT_PATH
        try:
            parsed = tuple(_selection_from_args(s) for s in selections or [])
        except (KeyError, TypeError, ValueError) as exc:
            return f"Invalid selections: {exc}"
        command = GetContextTabsCommand(
            include_content=include_content, selections=parsed,
        )
        return await self._tabs_text(target_project_path, command, "context tabs")

    async def _tabs_text(self, target_project_path: str, command: Any, label: str) -> str:
        try:
            response = await self._pool.request(target_project_path, command)
        except (CodelinkError, OSError) as exc:
            return f"Error getting {label}: {exc}"
        if not response.success:
            return f"Error getting {label}: {response.error}"
        tabs = response.get("tabs") or []
        if not tabs:
            return f"No {label} found."
        return json.dumps(tabs, indent=2)

    # ── Shell and completions ──

    async def execute_shell_command(
        self,
        target_project_path: str,
        command: str,
        cwd: str | None = None,
    ) -> str:
        if not is_valid_project_path(target_project_path):
            return INVALID_PROJECT_PATH
        try:
            response = await self._pool.request(
                target_project_path, ExecuteShellCommand(command=command, cwd=cwd),
            )
        except (CodelinkError, OSError) as exc:
            return f"Error executing command: {exc}"
        if not response.success:
            return f"Error executing command: {response.error}"
        return str(response.get("output", ""))

    async def get_completions(
        self,
        target_project_path: str,
        file_path: str,
        line: int,
        character: int,
        trigger_character: str | None = None,
    ) -> str:
        if not is_valid_project_path(target_project_path):
            return INVALID_PROJECT_PATH
        command = GetCompletionsCommand(
            file_path=_absolute(file_path),
            position=Position(line=line, character=character),
            trigger_character=trigger_character,
        )
        try:
            response = await self._pool.request(target_project_path, command)
        except (CodelinkError, OSError) as exc:
            return f"Error getting completions: {exc}"
        if not response.success:
            return f"Error getting completions: {response.error}"
        completions = response.get("completions") or []
        if not completions:
            return "No completions available."
        return json.dumps(completions, indent=2)


def _selection_from_args(raw: dict[str, Any]) -> Selection:
    ranges = tuple(
        LineRange(start_line=int(r["startLine"]), end_line=int(r["endLine"]))
        for r in raw.get("ranges") or []
    )
    return Selection(file_path=_absolute(str(raw["filePath"])), ranges=ranges)
