from __future__ import annotations

import asyncio
import io

import pytest
from rich.console import Console

from codelink.companion.console import ConsoleReviewer, unified_diff
from codelink.companion.diff_review import DiffReview, DiffSession, DiffState
from codelink.companion.editor import HeadlessEditor


def _setup(tmp_path):
    original = tmp_path / "app.py"
    modified = tmp_path / "app.py.new"
    original.write_text("value = 1\n")
    modified.write_text("value = 2\n")
    session = DiffSession(str(original), str(modified), "app.py")

    out = io.StringIO()
    reader = asyncio.StreamReader()
    reviewer = ConsoleReviewer(Console(file=out, width=120), reader=reader)
    editor = HeadlessEditor([str(tmp_path)], diff_presenter=reviewer.present)
    review = DiffReview(editor)
    reviewer.attach(review)
    return session, review, reviewer, reader, out


@pytest.mark.asyncio
async def test_unified_diff(tmp_path) -> None:
    session, *_ = _setup(tmp_path)

    diff = unified_diff(session)

    assert "-value = 1" in diff
    assert "+value = 2" in diff


@pytest.mark.asyncio
async def test_accept_from_console(tmp_path) -> None:
    session, review, reviewer, reader, out = _setup(tmp_path)

    task = asyncio.create_task(review.review(session))
    await asyncio.sleep(0)
    reader.feed_data(b"maybe\n")
    reader.feed_data(b"A\n")

    assert await asyncio.wait_for(task, timeout=5) is True
    text = out.getvalue()
    assert "app.py (Review Changes)" in text
    assert "Please answer" in text
    assert "Changes accepted." in text
    await reviewer.close()


@pytest.mark.asyncio
async def test_reject_from_console(tmp_path) -> None:
    session, review, reviewer, reader, _ = _setup(tmp_path)

    task = asyncio.create_task(review.review(session))
    await asyncio.sleep(0)
    reader.feed_data(b"reject\n")

    assert await asyncio.wait_for(task, timeout=5) is False
    await reviewer.close()


@pytest.mark.asyncio
async def test_closed_stdin_rejects(tmp_path) -> None:
    session, review, reviewer, reader, _ = _setup(tmp_path)

    task = asyncio.create_task(review.review(session))
    await asyncio.sleep(0)
    reader.feed_eof()

    assert await asyncio.wait_for(task, timeout=5) is False
    await reviewer.close()


@pytest.mark.asyncio
async def test_close_stops_waiting_without_resolving(tmp_path) -> None:
    session, review, reviewer, _, _ = _setup(tmp_path)

    task = asyncio.create_task(review.review(session))
    await asyncio.sleep(0)
    await reviewer.close()

    assert review.state is DiffState.AWAITING_CHOICE
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_withdrawn_diff_does_not_answer_the_next_one(tmp_path) -> None:
    session, review, reviewer, reader, out = _setup(tmp_path)

    first = asyncio.create_task(review.review(session))
    await asyncio.sleep(0)
    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first
    assert review.state is DiffState.IDLE

    second = DiffSession(session.original_path, session.modified_path, "again.py")
    task = asyncio.create_task(review.review(second))
    await asyncio.sleep(0)
    reader.feed_data(b"a\n")

    assert await asyncio.wait_for(task, timeout=5) is True
    assert out.getvalue().count("Changes accepted.") == 1
    await reviewer.close()
