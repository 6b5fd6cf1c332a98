"""Agent-facing side: RPC channels to editor companions and the MCP server."""
