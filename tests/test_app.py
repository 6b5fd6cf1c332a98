from __future__ import annotations

import asyncio
import json
import logging
from logging.handlers import RotatingFileHandler

import pytest

from codelink.app import configure_logging, run_companion
from codelink.companion.context_tracker import parse_include
from codelink.companion.settings import FeatureSettings
from codelink.config import CompanionConfig


def _config(tmp_path) -> CompanionConfig:
    project = tmp_path / "project"
    project.mkdir()
    return CompanionConfig(
        workspace_folders=[str(project)],
        registry_paths=[tmp_path / "registry.json"],
        settings_path=tmp_path / "home" / "settings.json",
        log_file=tmp_path / "home" / "logs" / "companion.log",
    )


async def _wait_for_registry(path, timeout: float = 5.0) -> dict:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if path.exists():
            data = json.loads(path.read_text())
            if data:
                return data
        await asyncio.sleep(0.01)
    raise AssertionError(f"{path} was never populated")


@pytest.mark.asyncio
async def test_companion_registers_serves_and_unregisters(tmp_path) -> None:
    config = _config(tmp_path)
    stop = asyncio.Event()

    task = asyncio.create_task(run_companion(config, stop))
    registry = await _wait_for_registry(tmp_path / "registry.json")
    port = registry[config.workspace_folders[0]]

    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(b'{"id": "req_1", "type": "ping"}\n')
    await writer.drain()
    reply = json.loads(await asyncio.wait_for(reader.readline(), timeout=5))
    writer.close()

    stop.set()
    await asyncio.wait_for(task, timeout=5)

    assert reply == {"id": "req_1", "success": True, "alive": True}
    assert json.loads((tmp_path / "registry.json").read_text()) == {}
    assert FeatureSettings.load(config.settings_path) == FeatureSettings()


def test_configure_logging_adds_rotating_file(tmp_path) -> None:
    config = _config(tmp_path)
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        log_file = configure_logging(config, verbose=True)
        file_handlers = [h for h in root.handlers if isinstance(h, RotatingFileHandler)]

        assert log_file == config.log_file
        assert root.level == logging.DEBUG
        assert file_handlers[0].maxBytes == 2_000_000
        assert file_handlers[0].backupCount == 5
    finally:
        for handler in root.handlers:
            if handler not in saved_handlers:
                handler.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)


@pytest.mark.asyncio
async def test_included_files_are_served_as_context(tmp_path) -> None:
    config = _config(tmp_path)
    source = tmp_path / "project" / "a.py"
    source.write_text("one\ntwo\nthree\n")
    stop = asyncio.Event()

    task = asyncio.create_task(run_companion(
        config, stop, include=[parse_include(f"{source}:2-3")],
    ))
    registry = await _wait_for_registry(tmp_path / "registry.json")
    port = registry[config.workspace_folders[0]]

    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(b'{"id": "req_1", "type": "getContextTabs"}\n')
    await writer.drain()
    reply = json.loads(await asyncio.wait_for(reader.readline(), timeout=5))
    writer.close()

    stop.set()
    await asyncio.wait_for(task, timeout=5)

    tab = reply["tabs"][0]
    assert tab["filePath"] == str(source)
    assert tab["lineRanges"] == [{"startLine": 2, "endLine": 3}]
