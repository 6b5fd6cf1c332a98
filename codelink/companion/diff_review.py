"""Diff approval state machine.

Turns one asynchronous user decision into one protocol response:

    IDLE ──review()──> AWAITING_CHOICE ──accept()/reject()──> RESOLVED ──> IDLE

Only one review may be in flight. A second review() while one is open
raises DiffSessionBusyError and leaves the first untouched.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from ..errors import DiffSessionBusyError

if TYPE_CHECKING:
    from .editor import EditorBackend

logger = logging.getLogger(__name__)


class DiffState(str, Enum):
    IDLE = "idle"
    AWAITING_CHOICE = "awaiting_choice"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class DiffSession:
    original_path: str
    modified_path: str
    title: str

    @property
    def display_title(self) -> str:
        return f"{self.title} (Review Changes)"


class DiffReview:
    """Holds the single outstanding review and its decision future."""

    def __init__(self, editor: EditorBackend) -> None:
        self._editor = editor
        self._state = DiffState.IDLE
        self._session: DiffSession | None = None
        self._choice: asyncio.Future | None = None

    @property
    def state(self) -> DiffState:
        return self._state

    @property
    def active_session(self) -> DiffSession | None:
        return self._session

    async def review(self, session: DiffSession) -> bool:
        """Present ``session`` and wait for accept() or reject().

        Returns True if the change was accepted. Not subject to any
        request timeout: the user may take as long as they like.
        """
        if self._state is not DiffState.IDLE:
            active = self._session.title if self._session else ""
            logger.warning(
                "Rejecting diff %r: %r is still under review",
                session.title, active,
            )
            raise DiffSessionBusyError(active)

        self._session = session
        self._choice = asyncio.get_running_loop().create_future()
        self._state = DiffState.AWAITING_CHOICE
        logger.info(
            "Showing diff %r: %s -> %s",
            session.title, session.original_path, session.modified_path,
        )
        try:
            await self._editor.show_diff(session)
            try:
                accepted = await self._choice
            except asyncio.CancelledError:
                logger.info("Diff %r withdrawn before a decision", session.title)
                await self._close_view(session)
                raise
            logger.info("Changes %s: %s", "accepted" if accepted else "rejected", session.title)
            await self._after_choice(session)
            return accepted
        finally:
            self._state = DiffState.IDLE
            self._session = None
            self._choice = None

    def accept(self) -> bool:
        """Accept the pending change. False if nothing was awaiting a choice."""
        return self._resolve(True)

    def reject(self) -> bool:
        """Reject the pending change. False if nothing was awaiting a choice."""
        return self._resolve(False)

    def _resolve(self, accepted: bool) -> bool:
        if self._state is not DiffState.AWAITING_CHOICE:
            return False
        if self._choice is None or self._choice.done():
            return False
        self._state = DiffState.RESOLVED
        self._choice.set_result(accepted)
        return True

    async def _after_choice(self, session: DiffSession) -> None:
        # Close the diff view and bring the original file back.
        try:
            await self._editor.close_diff(session)
            await self._editor.open_document(session.original_path, None)
        except Exception:
            logger.exception("Failed to restore editor after diff %r", session.title)

    async def _close_view(self, session: DiffSession) -> None:
        try:
            await self._editor.close_diff(session)
        except Exception:
            logger.exception("Failed to close diff %r", session.title)
