from __future__ import annotations

import asyncio

import pytest

from codelink.companion.diff_review import DiffReview, DiffSession, DiffState
from codelink.companion.editor import HeadlessEditor
from codelink.errors import DiffSessionBusyError


def _session(tmp_path, name: str = "app.py") -> DiffSession:
    original = tmp_path / name
    modified = tmp_path / f"{name}.proposed"
    original.write_text("old\n")
    modified.write_text("new\n")
    return DiffSession(str(original), str(modified), name)


@pytest.mark.asyncio
async def test_accept_resolves_true_and_restores_editor(tmp_path) -> None:
    editor = HeadlessEditor([str(tmp_path)])
    review = DiffReview(editor)
    session = _session(tmp_path)

    task = asyncio.create_task(review.review(session))
    await asyncio.sleep(0)
    assert review.state is DiffState.AWAITING_CHOICE
    assert editor.open_diffs == [session]

    assert review.accept() is True
    assert await task is True
    assert review.state is DiffState.IDLE
    assert editor.open_diffs == []
    assert editor.active_path == session.original_path


@pytest.mark.asyncio
async def test_reject_resolves_false(tmp_path) -> None:
    review = DiffReview(HeadlessEditor([str(tmp_path)]))

    task = asyncio.create_task(review.review(_session(tmp_path)))
    await asyncio.sleep(0)
    review.reject()

    assert await task is False


@pytest.mark.asyncio
async def test_second_diff_is_busy_and_first_survives(tmp_path) -> None:
    review = DiffReview(HeadlessEditor([str(tmp_path)]))
    first = _session(tmp_path, "a.py")

    task = asyncio.create_task(review.review(first))
    await asyncio.sleep(0)
    with pytest.raises(DiffSessionBusyError, match="a.py"):
        await review.review(_session(tmp_path, "b.py"))

    assert review.active_session == first
    review.accept()
    assert await task is True


@pytest.mark.asyncio
async def test_busy_until_cleanup_finishes(tmp_path) -> None:
    review = DiffReview(HeadlessEditor([str(tmp_path)]))

    task = asyncio.create_task(review.review(_session(tmp_path, "a.py")))
    await asyncio.sleep(0)
    review.accept()
    assert review.state is DiffState.RESOLVED
    with pytest.raises(DiffSessionBusyError):
        await review.review(_session(tmp_path, "b.py"))

    await task
    assert review.state is DiffState.IDLE


@pytest.mark.asyncio
async def test_second_resolution_is_ignored(tmp_path) -> None:
    review = DiffReview(HeadlessEditor([str(tmp_path)]))

    task = asyncio.create_task(review.review(_session(tmp_path)))
    await asyncio.sleep(0)
    assert review.accept() is True
    assert review.reject() is False

    assert await task is True


def test_resolve_without_pending_diff_is_a_no_op() -> None:
    review = DiffReview(HeadlessEditor())

    assert review.accept() is False
    assert review.reject() is False
    assert review.state is DiffState.IDLE


@pytest.mark.asyncio
async def test_cancelled_review_returns_to_idle(tmp_path) -> None:
    editor = HeadlessEditor([str(tmp_path)])
    review = DiffReview(editor)

    task = asyncio.create_task(review.review(_session(tmp_path)))
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert review.state is DiffState.IDLE
    assert review.active_session is None
    assert editor.open_diffs == []


@pytest.mark.asyncio
async def test_restore_failure_does_not_change_the_answer(tmp_path) -> None:
    review = DiffReview(HeadlessEditor([str(tmp_path)]))
    session = _session(tmp_path)
    (tmp_path / "app.py").unlink()

    task = asyncio.create_task(review.review(session))
    await asyncio.sleep(0)
    review.accept()

    assert await task is True
    assert review.state is DiffState.IDLE


@pytest.mark.asyncio
async def test_presenter_receives_session(tmp_path) -> None:
    presented: list[DiffSession] = []

    async def presenter(session: DiffSession) -> None:
        presented.append(session)

    review = DiffReview(HeadlessEditor([str(tmp_path)], diff_presenter=presenter))
    session = _session(tmp_path)

    task = asyncio.create_task(review.review(session))
    await asyncio.sleep(0)
    review.reject()
    await task

    assert presented == [session]
    assert session.display_title == "app.py (Review Changes)"
