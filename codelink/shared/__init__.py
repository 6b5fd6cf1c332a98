"""Code shared by the agent-facing server and the editor companion."""
