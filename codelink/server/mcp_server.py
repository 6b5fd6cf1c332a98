"""Agent-facing MCP server.

Standalone FastMCP server launched by an agent as an MCP subprocess.
Speaks MCP on stdin/stdout and relays each tool call to the editor
companion that serves the given project, found through the registry.

Usage:
    codelink-server [--config FILE] [--verbose]

Tool call flow:
    agent → MCP stdin/stdout → codelink-server → TCP → companion → editor
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import Context, FastMCP

from ..config import ServerConfig
from ..yaml_config import load_yaml_config
from .channel_pool import ChannelPool
from .tools import EditorTools

logger = logging.getLogger(__name__)

# Set from CLI args before the server starts
_server_config: ServerConfig | None = None


# ── FastMCP lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def server_lifespan(server: FastMCP):
    """Own the channel pool for the lifetime of the MCP session."""
    pool = ChannelPool(_server_config or ServerConfig.from_env())
    try:
        yield {"tools": EditorTools(pool)}
    finally:
        await pool.close()


mcp = FastMCP(
    name="codelink",
    instructions=(
        "Tools for working inside a running code editor. Every tool except "
        "list_available_projects and open_project needs targetProjectPath, "
        "the full path of the project you are working in. Call "
        "list_available_projects if you do not know it.\n\n"
        "Use create_diff instead of writing files directly: the user "
        "reviews the change and it is only applied if accepted."
    ),
    lifespan=server_lifespan,
)


def _tools(ctx: Context) -> EditorTools:
    """Get the EditorTools from the lifespan context."""
    return ctx.request_context.lifespan_context["tools"]


# ── Tool registrations ────────────────────────────────────────────
# Parameter names are the agent-facing schema and stay camelCase.

@mcp.tool(
    name="create_diff",
    description=(
        "Use this instead of writing files directly. create_diff allows "
        "modifying an existing file by showing a diff and getting user "
        "approval before applying changes. Only use this tool on existing "
        "files. If a new file needs to be created, do not use this tool."
    ),
)
async def create_diff(
    filePath: str,
    newContent: str,
    targetProjectPath: str,
    description: str | None = None,
    ctx: Context = None,
) -> str:
    return await _tools(ctx).create_diff(
        filePath, newContent, targetProjectPath, description,
    )


@mcp.tool(
    name="open_file",
    description=(
        "Open a file in the editor. Use this to show the user a file that "
        "matters to the current task."
    ),
)
async def open_file(
    filePath: str,
    targetProjectPath: str,
    viewColumn: int | None = None,
    preserveFocus: bool | None = None,
    preview: bool = False,
    ctx: Context = None,
) -> str:
    return await _tools(ctx).open_file(
        filePath, targetProjectPath,
        view_column=viewColumn, preserve_focus=preserveFocus, preview=preview,
    )


@mcp.tool(
    name="open_project",
    description="Open a project folder in the editor, by default in a new window.",
)
async def open_project(
    projectPath: str,
    newWindow: bool = True,
    ctx: Context = None,
) -> str:
    return await _tools(ctx).open_project(projectPath, new_window=newWindow)


@mcp.tool(
    name="check_extension_status",
    description="Check whether the editor companion for a project is running and responding.",
)
async def check_extension_status(targetProjectPath: str, ctx: Context = None) -> str:
    return await _tools(ctx).check_extension_status(targetProjectPath)


@mcp.tool(
    name="get_extension_port",
    description="Get the port the editor companion for a project listens on.",
)
async def get_extension_port(targetProjectPath: str, ctx: Context = None) -> str:
    return await _tools(ctx).get_extension_port(targetProjectPath)


@mcp.tool(
    name="list_available_projects",
    description=(
        "Lists all available projects from the port registry file. Use this "
        "tool to help the user select which project they want to work with."
    ),
)
async def list_available_projects(ctx: Context = None) -> str:
    return await _tools(ctx).list_available_projects()


@mcp.tool(
    name="get_active_tabs",
    description="List the tabs open in the editor, optionally with their content.",
)
async def get_active_tabs(
    targetProjectPath: str,
    includeContent: bool = False,
    ctx: Context = None,
) -> str:
    return await _tools(ctx).get_active_tabs(targetProjectPath, includeContent)


@mcp.tool(
    name="get_context_tabs",
    description=(
        "Get the files the user marked as context, plus any requested "
        "selections ([{filePath, ranges: [{startLine, endLine}]}], 1-based "
        "inclusive lines)."
    ),
)
async def get_context_tabs(
    targetProjectPath: str,
    includeContent: bool = False,
    selections: list[dict[str, Any]] | None = None,
    ctx: Context = None,
) -> str:
    return await _tools(ctx).get_context_tabs(
        targetProjectPath, includeContent, selections,
    )


@mcp.tool(
    name="execute_shell_command",
    description="Run a shell command in the editor's workspace and return its output.",
)
async def execute_shell_command(
    targetProjectPath: str,
    command: str,
    cwd: str | None = None,
    ctx: Context = None,
) -> str:
    return await _tools(ctx).execute_shell_command(targetProjectPath, command, cwd)


@mcp.tool(
    name="get_completions",
    description="Get code completions at a zero-based position in a file.",
)
async def get_completions(
    targetProjectPath: str,
    filePath: str,
    line: int,
    character: int,
    triggerCharacter: str | None = None,
    ctx: Context = None,
) -> str:
    return await _tools(ctx).get_completions(
        targetProjectPath, filePath, line, character, triggerCharacter,
    )


# ── Entry point ───────────────────────────────────────────────────

def main() -> None:
    """Entry point when launched by an agent as an MCP subprocess."""
    global _server_config

    parser = argparse.ArgumentParser(
        prog="codelink-server",
        description="MCP server that drives a running editor through its companion",
    )
    parser.add_argument(
        "--config", default=None,
        help="YAML config file (defaults to CODELINK_* environment variables)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    if args.config:
        _server_config = load_yaml_config(args.config).server
    else:
        _server_config = ServerConfig.from_env()

    # Logging goes to stderr (stdout is the MCP transport)
    level = logging.DEBUG if args.verbose else _server_config.log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )
    logger.info(
        "Starting codelink-server (registry=%s, pid=%d)",
        ", ".join(str(p) for p in _server_config.registry_paths), os.getpid(),
    )

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
