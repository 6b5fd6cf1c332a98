"""Terminal diff reviewer for the stand-alone companion.

Prints each proposed change as a colored unified diff and reads the
decision from stdin: ``a``/``accept`` or ``r``/``reject``. Closing stdin
rejects the pending change.
"""
from __future__ import annotations

import asyncio
import difflib
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax

from .diff_review import DiffReview, DiffSession, DiffState

logger = logging.getLogger(__name__)

_ACCEPT = {"a", "accept", "y", "yes"}
_REJECT = {"r", "reject", "n", "no"}


def unified_diff(session: DiffSession) -> str:
    """Unified diff between the original and the proposed file."""
    original = Path(session.original_path).read_text(encoding="utf-8")
    modified = Path(session.modified_path).read_text(encoding="utf-8")
    return "".join(difflib.unified_diff(
        original.splitlines(keepends=True),
        modified.splitlines(keepends=True),
        fromfile=session.original_path,
        tofile=f"{session.original_path} (proposed)",
    ))


class ConsoleReviewer:
    """Presents diffs on a rich console and resolves the DiffReview."""

    def __init__(
        self,
        console: Console | None = None,
        reader: asyncio.StreamReader | None = None,
    ) -> None:
        # stdout may be a pipe to something else; talk to the user on stderr.
        self._console = console or Console(stderr=True)
        self._reader = reader
        self._review: DiffReview | None = None
        self._decision_task: asyncio.Task | None = None

    def attach(self, review: DiffReview) -> None:
        self._review = review

    async def present(self, session: DiffSession) -> None:
        """Show the diff and start waiting for the user's answer."""
        try:
            diff_text = unified_diff(session)
        except (OSError, UnicodeDecodeError) as exc:
            diff_text = f"(could not render diff: {exc})"
        self._console.print(Panel(
            Syntax(diff_text or "(no changes)", "diff", word_wrap=True),
            title=session.display_title,
            border_style="yellow",
        ))
        self._console.print(
            "[bold]Apply these changes?[/bold] [green]\\[a]ccept[/green] / "
            "[red]\\[r]eject[/red]"
        )
        # A withdrawn diff may still be waiting on stdin.
        await self.close()
        self._decision_task = asyncio.get_running_loop().create_task(
            self._await_decision(session),
        )

    async def close(self) -> None:
        task, self._decision_task = self._decision_task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _stdin(self) -> asyncio.StreamReader:
        if self._reader is None:
            loop = asyncio.get_running_loop()
            reader = asyncio.StreamReader()
            await loop.connect_read_pipe(
                lambda: asyncio.StreamReaderProtocol(reader), sys.stdin,
            )
            self._reader = reader
        return self._reader

    def _still_pending(self, session: DiffSession) -> bool:
        review = self._review
        return (
            review is not None
            and review.state is DiffState.AWAITING_CHOICE
            and review.active_session == session
        )

    async def _await_decision(self, session: DiffSession) -> None:
        if self._review is None:
            logger.error("No diff review attached; cannot resolve %r", session.title)
            return
        reader = await self._stdin()
        while self._still_pending(session):
            line = await reader.readline()
            if not self._still_pending(session):
                return
            if not line:
                logger.warning("stdin closed; rejecting %r", session.title)
                self._review.reject()
                return
            answer = line.decode("utf-8", errors="replace").strip().lower()
            if answer in _ACCEPT:
                self._review.accept()
                self._console.print("[green]Changes accepted.[/green]")
            elif answer in _REJECT:
                self._review.reject()
                self._console.print("[red]Changes rejected.[/red]")
            elif answer:
                self._console.print("Please answer [green]a[/green] or [red]r[/red].")
