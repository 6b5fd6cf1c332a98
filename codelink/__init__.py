"""codelink: drive a running code editor from an MCP agent.

Two processes cooperate: codelink.server (the agent-facing MCP server)
and codelink.companion (the editor side). They find each other through
a shared registry file and talk newline-delimited JSON over loopback TCP.
"""
