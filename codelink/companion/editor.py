"""Abstract editor capabilities and a headless implementation.

The dispatcher only talks to an EditorBackend. An editor plugin would
implement it against its own API; HeadlessEditor implements it over the
filesystem so a companion can run stand-alone from a terminal.
"""
from __future__ import annotations

import abc
import logging
import os
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..shared.protocol import OpenOptions, Position
from .diff_review import DiffSession

logger = logging.getLogger(__name__)

DiffPresenter = Callable[[DiffSession], Awaitable[None]]
WorkspaceListener = Callable[[list[str]], Awaitable[None]]

_LANGUAGE_IDS = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".jsx": "javascriptreact",
    ".ts": "typescript",
    ".tsx": "typescriptreact",
    ".json": "json",
    ".md": "markdown",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".html": "html",
    ".css": "css",
    ".sh": "shellscript",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".rb": "ruby",
}

_WORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_MAX_COMPLETIONS = 50


@dataclass
class TabInfo:
    """One open document as reported to the agent."""
    file_path: str
    is_active: bool = False
    language_id: str | None = None
    content: str | None = None
    workspace_folder: str | None = None

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {
            "filePath": self.file_path,
            "isActive": self.is_active,
        }
        if self.language_id is not None:
            wire["languageId"] = self.language_id
        if self.content is not None:
            wire["content"] = self.content
        if self.workspace_folder is not None:
            wire["workspaceFolder"] = self.workspace_folder
        return wire


@dataclass
class CompletionItem:
    label: str
    insert_text: str | None = None
    detail: str | None = None
    documentation: str | None = None
    kind: str | None = None

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {"label": self.label}
        for key, value in (
            ("insertText", self.insert_text),
            ("detail", self.detail),
            ("documentation", self.documentation),
            ("kind", self.kind),
        ):
            if value is not None:
                wire[key] = value
        return wire


def path_in_folder(path: str, folder: str) -> bool:
    """True if ``path`` is ``folder`` or lies under it (separator-bounded)."""
    folder = folder.rstrip(os.sep) or os.sep
    if path == folder:
        return True
    prefix = folder if folder.endswith(os.sep) else folder + os.sep
    return path.startswith(prefix)


class EditorBackend(abc.ABC):
    """What the companion needs from an editor."""

    @abc.abstractmethod
    def workspace_folders(self) -> list[str]:
        """Absolute paths of the folders open in this editor window."""

    @abc.abstractmethod
    async def open_document(self, path: str, options: OpenOptions | None) -> None:
        """Show a file. Raises OSError if it cannot be opened."""

    @abc.abstractmethod
    async def open_folder(self, path: str, new_window: bool) -> None:
        ...

    @abc.abstractmethod
    async def show_diff(self, session: DiffSession) -> None:
        """Present a diff for review. Returns once it is on screen."""

    @abc.abstractmethod
    async def close_diff(self, session: DiffSession) -> None:
        ...

    @abc.abstractmethod
    async def focus_window(self) -> None:
        ...

    @abc.abstractmethod
    def list_tabs(self) -> list[TabInfo]:
        """Open documents, without content."""

    @abc.abstractmethod
    async def read_document(self, path: str) -> str:
        """Current text of a document, open or not. Raises OSError."""

    @abc.abstractmethod
    async def completions(
        self,
        path: str,
        position: Position,
        trigger_character: str | None,
    ) -> list[CompletionItem]:
        ...

    def language_id(self, path: str) -> str:
        return _LANGUAGE_IDS.get(Path(path).suffix.lower(), "plaintext")

    def workspace_folder_for(self, path: str) -> str | None:
        """The open workspace folder containing ``path``, deepest first."""
        matches = [f for f in self.workspace_folders() if path_in_folder(path, f)]
        if not matches:
            return None
        return max(matches, key=len)


class HeadlessEditor(EditorBackend):
    """Filesystem-backed editor with an in-memory tab list.

    Diffs are handed to ``diff_presenter`` (a console reviewer in the
    stand-alone companion). Folder changes are reported to
    ``on_workspace_change`` so the registry can follow them.
    """

    def __init__(
        self,
        workspace_folders: list[str] | None = None,
        diff_presenter: DiffPresenter | None = None,
        on_workspace_change: WorkspaceListener | None = None,
    ) -> None:
        self._folders = [os.path.abspath(f) for f in workspace_folders or []]
        self._tabs: list[str] = []
        self._active: str | None = None
        self._diffs: list[DiffSession] = []
        self.diff_presenter = diff_presenter
        self.on_workspace_change = on_workspace_change
        self.focus_count = 0

    def workspace_folders(self) -> list[str]:
        return list(self._folders)

    async def set_workspace_folders(self, folders: list[str]) -> None:
        self._folders = [os.path.abspath(f) for f in folders]
        logger.info("Workspace folders: %s", ", ".join(self._folders) or "(none)")
        if self.on_workspace_change is not None:
            await self.on_workspace_change(self.workspace_folders())

    async def open_document(self, path: str, options: OpenOptions | None) -> None:
        absolute = os.path.abspath(path)
        if not os.path.isfile(absolute):
            raise FileNotFoundError(f"File not found: {absolute}")
        if absolute not in self._tabs:
            self._tabs.append(absolute)
        if not (options and options.preserve_focus):
            self._active = absolute
        logger.info("Opened %s", absolute)

    async def open_folder(self, path: str, new_window: bool) -> None:
        absolute = os.path.abspath(path)
        if not os.path.isdir(absolute):
            raise NotADirectoryError(f"Not a directory: {absolute}")
        if new_window:
            # No separate windows here: the folder joins this workspace.
            folders = self.workspace_folders()
            if absolute not in folders:
                folders.append(absolute)
        else:
            folders = [absolute]
        await self.set_workspace_folders(folders)

    async def show_diff(self, session: DiffSession) -> None:
        self._diffs.append(session)
        if self.diff_presenter is not None:
            await self.diff_presenter(session)
        else:
            logger.info("Diff ready for review: %s", session.display_title)

    async def close_diff(self, session: DiffSession) -> None:
        if session in self._diffs:
            self._diffs.remove(session)

    @property
    def open_diffs(self) -> list[DiffSession]:
        return list(self._diffs)

    async def focus_window(self) -> None:
        self.focus_count += 1
        logger.debug("Focus requested")

    def list_tabs(self) -> list[TabInfo]:
        return [
            TabInfo(
                file_path=path,
                is_active=path == self._active,
                language_id=self.language_id(path),
                workspace_folder=self.workspace_folder_for(path),
            )
            for path in self._tabs
        ]

    def is_open(self, path: str) -> bool:
        return os.path.abspath(path) in self._tabs

    @property
    def active_path(self) -> str | None:
        return self._active

    async def read_document(self, path: str) -> str:
        return Path(path).read_text(encoding="utf-8")

    async def completions(
        self,
        path: str,
        position: Position,
        trigger_character: str | None,
    ) -> list[CompletionItem]:
        """Word completions drawn from the document itself."""
        text = await self.read_document(path)
        lines = text.split("\n")
        if position.line < 0 or position.line >= len(lines):
            return []
        before = lines[position.line][:max(position.character, 0)]
        match = re.search(r"[A-Za-z_][A-Za-z0-9_]*$", before)
        prefix = match.group(0) if match else ""
        if not prefix and trigger_character is None:
            return []

        words = sorted({
            word for word in _WORD_RE.findall(text)
            if word.startswith(prefix) and word != prefix
        })
        return [
            CompletionItem(label=word, insert_text=word, kind="text")
            for word in words[:_MAX_COMPLETIONS]
        ]
