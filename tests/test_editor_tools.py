from __future__ import annotations

import json
from contextlib import asynccontextmanager
from pathlib import Path

import pytest

from codelink.companion.diff_review import DiffReview, DiffSession
from codelink.companion.dispatcher import CommandDispatcher
from codelink.companion.editor import HeadlessEditor
from codelink.companion.socket_server import CompanionServer
from codelink.config import ChannelConfig, ServerConfig
from codelink.server.channel_pool import ChannelPool
from codelink.server.tools import (
    DIFF_ACCEPTED,
    DIFF_REJECTED,
    EDITOR_NOT_RUNNING,
    INVALID_PROJECT_PATH,
    EditorTools,
    is_valid_project_path,
)
from codelink.shared.services.registry_store import RegistryStore


class _Companion:
    """In-process companion that answers diffs with a fixed decision."""

    def __init__(self, project: Path, decision: bool | None = None) -> None:
        self.editor = HeadlessEditor([str(project)], diff_presenter=self._present)
        self.review = DiffReview(self.editor)
        self.server = CompanionServer(CommandDispatcher(self.editor, diff_review=self.review))
        self.decision = decision
        self.presented: list[DiffSession] = []
        self.proposed: str | None = None

    async def _present(self, session: DiffSession) -> None:
        self.presented.append(session)
        self.proposed = Path(session.modified_path).read_text(encoding="utf-8")
        if self.decision is True:
            self.review.accept()
        elif self.decision is False:
            self.review.reject()


@asynccontextmanager
async def _running(tmp_path, decision: bool | None = None):
    project = tmp_path / "project"
    project.mkdir()
    registry = tmp_path / "registry.json"
    companion = _Companion(project, decision)
    port = await companion.server.start()
    RegistryStore.merge(registry, {str(project): port})
    pool = ChannelPool(ServerConfig(
        channel=ChannelConfig(request_timeout=10),
        registry_paths=[registry],
    ))
    try:
        yield EditorTools(pool), companion, project
    finally:
        await pool.close()
        await companion.server.stop()


def _tools_without_registry(tmp_path) -> EditorTools:
    return EditorTools(ChannelPool(ServerConfig(
        registry_paths=[tmp_path / "missing.json"],
    )))


@pytest.mark.parametrize("path, valid", [
    (None, False),
    ("", False),
    (".", False),
    ("/", False),
    ("ab", False),
    ("/work/project", True),
])
def test_project_path_validation(path, valid) -> None:
    assert is_valid_project_path(path) is valid


# ── create_diff ──


@pytest.mark.asyncio
async def test_accepted_diff_is_written(tmp_path) -> None:
    async with _running(tmp_path, decision=True) as (tools, companion, project):
        target = project / "app.py"
        target.write_text("old = 1\n")

        result = await tools.create_diff(str(target), "new = 2\n", str(project), "Bump value")

        assert result == DIFF_ACCEPTED
        assert target.read_text() == "new = 2\n"
        [session] = companion.presented
        assert session.title == "Bump value"
        assert companion.proposed == "new = 2\n"
        assert not Path(session.modified_path).exists()


@pytest.mark.asyncio
async def test_rejected_diff_leaves_file_alone(tmp_path) -> None:
    async with _running(tmp_path, decision=False) as (tools, companion, project):
        target = project / "app.py"
        target.write_text("old = 1\n")

        result = await tools.create_diff(str(target), "new = 2\n", str(project))

        assert result == DIFF_REJECTED
        assert target.read_text() == "old = 1\n"
        assert companion.presented[0].title == "Previewing Changes"
        assert not Path(companion.presented[0].modified_path).exists()


@pytest.mark.asyncio
async def test_diff_of_missing_file_is_refused(tmp_path) -> None:
    async with _running(tmp_path, decision=True) as (tools, companion, project):
        result = await tools.create_diff(str(project / "new.py"), "x", str(project))

        assert result.startswith("Cannot perform diff because the target file does not exist")
        assert companion.presented == []


@pytest.mark.asyncio
async def test_invalid_project_path_short_circuits(tmp_path) -> None:
    tools = _tools_without_registry(tmp_path)

    assert await tools.create_diff(str(tmp_path / "a.py"), "x", ".") == INVALID_PROJECT_PATH
    assert await tools.execute_shell_command("/", "ls") == INVALID_PROJECT_PATH


# ── Files and projects ──


@pytest.mark.asyncio
async def test_open_file(tmp_path) -> None:
    async with _running(tmp_path) as (tools, companion, project):
        target = project / "notes.md"
        target.write_text("# notes\n")

        result = await tools.open_file(str(target), str(project), preserve_focus=False)

        assert result == f"Successfully opened file: {target}"
        assert companion.editor.active_path == str(target)


@pytest.mark.asyncio
async def test_open_missing_file(tmp_path) -> None:
    async with _running(tmp_path) as (tools, _, project):
        result = await tools.open_file(str(project / "gone.py"), str(project))

        assert result == f"Error: File does not exist: {project / 'gone.py'}"


@pytest.mark.asyncio
async def test_open_project_uses_any_instance(tmp_path) -> None:
    async with _running(tmp_path) as (tools, companion, project):
        other = tmp_path / "other"
        other.mkdir()

        result = await tools.open_project(str(other))

        assert result.startswith("Successfully opened project in a new editor window")
        assert str(other) in companion.editor.workspace_folders()


@pytest.mark.asyncio
async def test_open_project_without_editor(tmp_path) -> None:
    tools = _tools_without_registry(tmp_path)

    assert await tools.open_project(str(tmp_path)) == EDITOR_NOT_RUNNING


# ── Discovery ──


@pytest.mark.asyncio
async def test_status_and_port(tmp_path) -> None:
    async with _running(tmp_path) as (tools, companion, project):
        status = await tools.check_extension_status(str(project / "src"))
        port = await tools.get_extension_port(str(project))

        assert status == "Editor companion is installed and responding"
        assert port == (
            f"Extension port: {companion.server.port} found matching the "
            f"Project Path: {project}"
        )


@pytest.mark.asyncio
async def test_status_without_registry(tmp_path) -> None:
    tools = _tools_without_registry(tmp_path)

    assert await tools.check_extension_status("/work/project") == (
        "Editor companion is not installed or not running"
    )
    assert await tools.get_extension_port("/work/project") == (
        "Could not find extension port for the specified project path"
    )


@pytest.mark.asyncio
async def test_list_available_projects(tmp_path) -> None:
    async with _running(tmp_path) as (tools, _, project):
        listing = await tools.list_available_projects()

    assert listing.startswith(f"Available projects:\n\n1. {project}")


@pytest.mark.asyncio
async def test_list_available_projects_when_none(tmp_path) -> None:
    tools = _tools_without_registry(tmp_path)

    assert (await tools.list_available_projects()).startswith("No editor projects found")


# ── Context, shell, completions ──


@pytest.mark.asyncio
async def test_active_tabs(tmp_path) -> None:
    async with _running(tmp_path) as (tools, _, project):
        assert await tools.get_active_tabs(str(project)) == "No active tabs found."

        target = project / "main.py"
        target.write_text("print(1)\n")
        await tools.open_file(str(target), str(project))
        tabs = json.loads(await tools.get_active_tabs(str(project), include_content=True))

    assert tabs == [{
        "filePath": str(target),
        "isActive": True,
        "languageId": "python",
        "content": "print(1)\n",
        "workspaceFolder": str(project),
    }]


@pytest.mark.asyncio
async def test_context_tabs_from_selection(tmp_path) -> None:
    async with _running(tmp_path) as (tools, _, project):
        target = project / "lib.py"
        target.write_text("a\nb\nc\n")

        text = await tools.get_context_tabs(
            str(project),
            include_content=True,
            selections=[{"filePath": str(target), "ranges": [{"startLine": 2, "endLine": 2}]}],
        )
        invalid = await tools.get_context_tabs(str(project), selections=[{"ranges": []}])

    [tab] = json.loads(text)
    assert tab["selectedContent"] == "b"
    assert invalid.startswith("Invalid selections")


@pytest.mark.asyncio
async def test_shell_command(tmp_path) -> None:
    async with _running(tmp_path) as (tools, _, project):
        output = await tools.execute_shell_command(str(project), "echo hi", cwd=str(project))
        failed = await tools.execute_shell_command(str(project), "exit 4")

    assert output == "hi\n"
    assert failed.startswith("Error executing command: Command failed (rc=4)")


@pytest.mark.asyncio
async def test_completions(tmp_path) -> None:
    async with _running(tmp_path) as (tools, _, project):
        source = project / "mod.py"
        source.write_text("alpha_value = 1\nalp\n")

        found = await tools.get_completions(str(project), str(source), 1, 3)
        none = await tools.get_completions(str(project), str(source), 1, 0)

    assert json.loads(found)[0]["label"] == "alpha_value"
    assert none == "No completions available."


@pytest.mark.asyncio
async def test_unknown_workspace_is_reported(tmp_path) -> None:
    async with _running(tmp_path) as (tools, _, _project):
        result = await tools.execute_shell_command("/somewhere/else", "echo hi")

    assert result.startswith("Error executing command: No editor workspace found")
