from __future__ import annotations

import asyncio
import json

import pytest

from codelink.config import ChannelConfig, ServerConfig
from codelink.errors import (
    ChannelFailedError,
    RegistryNotFoundError,
    WorkspaceNotFoundError,
)
from codelink.server.channel_pool import ChannelPool
from codelink.server.channel_states import ChannelState
from codelink.shared.protocol import GetCurrentWorkspaceCommand, encode_message


def _pool(tmp_path, registry: dict[str, int] | None) -> ChannelPool:
    registry_file = tmp_path / "registry.json"
    if registry is not None:
        registry_file.write_text(json.dumps(registry))
    return ChannelPool(ServerConfig(
        channel=ChannelConfig(request_timeout=5, connect_timeout=2),
        registry_paths=[registry_file],
    ))


async def _start_companion(respond):
    """Loopback peer answering each request line with respond(message)."""
    async def handle(reader, writer):
        while True:
            line = await reader.readline()
            if not line:
                break
            reply = respond(json.loads(line))
            writer.write(encode_message(reply))
            await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1]


def test_missing_registry_raises(tmp_path) -> None:
    pool = _pool(tmp_path, None)

    with pytest.raises(RegistryNotFoundError) as info:
        pool.resolve_port(str(tmp_path))
    assert str(tmp_path / "registry.json") in info.value.locations


def test_unrelated_path_is_not_guessed(tmp_path) -> None:
    pool = _pool(tmp_path, {"/work/other": 5001})

    with pytest.raises(WorkspaceNotFoundError):
        pool.resolve_port("/work/project")


def test_any_port_on_empty_registry_raises(tmp_path) -> None:
    pool = _pool(tmp_path, {})

    with pytest.raises(RegistryNotFoundError):
        pool.any_port()


def test_resolves_nested_target_to_ancestor(tmp_path) -> None:
    pool = _pool(tmp_path, {"/work/project": 5001})

    assert pool.resolve_port("/work/project/src/app") == 5001


@pytest.mark.asyncio
async def test_channel_is_cached_per_path(tmp_path) -> None:
    pool = _pool(tmp_path, {"/work/project": 5001})

    first = await pool.channel_for("/work/project")
    second = await pool.channel_for("/work/project/")

    assert first is second
    assert first.port == 5001


@pytest.mark.asyncio
async def test_channel_replaced_when_port_changes(tmp_path) -> None:
    pool = _pool(tmp_path, {"/work/project": 5001})
    old = await pool.channel_for("/work/project")

    (tmp_path / "registry.json").write_text(json.dumps({"/work/project": 5002}))
    new = await pool.channel_for("/work/project")

    assert new is not old
    assert new.port == 5002


@pytest.mark.asyncio
async def test_failed_channel_is_replaced(tmp_path) -> None:
    pool = _pool(tmp_path, {"/work/project": 5001})
    old = await pool.channel_for("/work/project")
    old._state = ChannelState.FAILED

    new = await pool.channel_for("/work/project")

    assert new is not old
    assert new.state is ChannelState.DISCONNECTED


@pytest.mark.asyncio
async def test_request_round_trip(tmp_path) -> None:
    def respond(message):
        return {"id": message["id"], "success": True, "workspaces": ["/work/project"]}

    server, port = await _start_companion(respond)
    pool = _pool(tmp_path, {"/work/project": port})
    try:
        response = await pool.request("/work/project", GetCurrentWorkspaceCommand())
        assert response.get("workspaces") == ["/work/project"]
    finally:
        await pool.close()
        server.close()
        await server.wait_closed()


@pytest.mark.asyncio
async def test_connection_closed_response_is_recovered_and_retried(tmp_path) -> None:
    seen: list[str] = []

    def respond(message):
        seen.append(message["type"])
        if message["type"] == "getCurrentWorkspace" and seen.count("getCurrentWorkspace") == 1:
            return {"id": message["id"], "error": {"code": -32000, "message": "Connection closed"}}
        return {"id": message["id"], "success": True, "alive": True, "workspaces": []}

    server, port = await _start_companion(respond)
    pool = _pool(tmp_path, {"/work/project": port})
    try:
        response = await pool.request("/work/project", GetCurrentWorkspaceCommand())
        assert response.success is True
        assert seen == ["getCurrentWorkspace", "ping", "getCurrentWorkspace"]
    finally:
        await pool.close()
        server.close()
        await server.wait_closed()


@pytest.mark.asyncio
async def test_failed_recovery_raises_channel_failed(tmp_path) -> None:
    holder: dict = {}

    def respond(message):
        # Stop accepting so the recovery reconnect is refused.
        holder["server"].close()
        return {"id": message["id"], "error": {"code": -32000, "message": "Connection closed"}}

    server, port = await _start_companion(respond)
    holder["server"] = server
    pool = _pool(tmp_path, {"/work/project": port})
    try:
        with pytest.raises(ChannelFailedError):
            await pool.request("/work/project", GetCurrentWorkspaceCommand())
    finally:
        await pool.close()
        await server.wait_closed()
