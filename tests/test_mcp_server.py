from __future__ import annotations

import pytest

from codelink.server.mcp_server import mcp

EXPECTED_TOOLS = {
    "create_diff",
    "open_file",
    "open_project",
    "check_extension_status",
    "get_extension_port",
    "list_available_projects",
    "get_active_tabs",
    "get_context_tabs",
    "execute_shell_command",
    "get_completions",
}


@pytest.mark.asyncio
async def test_registers_every_editor_tool() -> None:
    tools = await mcp.list_tools()

    assert {tool.name for tool in tools} == EXPECTED_TOOLS


@pytest.mark.asyncio
async def test_tool_schemas_use_agent_facing_names() -> None:
    tools = {tool.name: tool for tool in await mcp.list_tools()}

    create_diff = tools["create_diff"].inputSchema
    assert set(create_diff["required"]) == {"filePath", "newContent", "targetProjectPath"}
    assert "ctx" not in create_diff["properties"]
    assert "targetProjectPath" not in tools["list_available_projects"].inputSchema.get(
        "properties", {},
    )
