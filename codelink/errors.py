"""Exception hierarchy for codelink.

One exception per failure mode. Discovery and policy failures are
recovered locally; channel failures are retried before they surface.
"""
from __future__ import annotations

CONNECTION_CLOSED_CODE = -32000


class CodelinkError(Exception):
    """Base exception for all codelink errors."""


# ── Discovery ──────────────────────────────────────────────────


class DiscoveryError(CodelinkError):
    """No editor instance could be located."""


class RegistryNotFoundError(DiscoveryError):
    """No registry file exists in any known location."""
    def __init__(self, locations: list[str]):
        self.locations = locations
        super().__init__(
            "No editor registry found (looked in: "
            f"{', '.join(locations) or 'nowhere'})"
        )


class WorkspaceNotFoundError(DiscoveryError):
    """The registry has no workspace related to the target path."""
    def __init__(self, target_path: str):
        self.target_path = target_path
        super().__init__(
            f"No editor workspace found for project path: {target_path}"
        )


# ── Channel ────────────────────────────────────────────────────


class ChannelError(CodelinkError):
    """Transport-level failure on an RPC channel."""


class ConnectTimeoutError(ChannelError):
    """TCP connect did not complete in time."""
    def __init__(self, port: int, timeout_seconds: float):
        self.port = port
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Connection to port {port} timed out after {timeout_seconds}s"
        )


class ChannelFailedError(ChannelError):
    """Reconnection gave up; the channel is in its terminal state."""
    def __init__(self, port: int, reason: str):
        self.port = port
        self.reason = reason
        super().__init__(f"Channel to port {port} failed: {reason}")


class ConnectionClosedError(ChannelError):
    """The connection closed before a response arrived (code -32000)."""
    code = CONNECTION_CLOSED_CODE

    def __init__(self, message: str = "Connection closed"):
        super().__init__(message)


class RequestTimeoutError(ChannelError):
    """No response arrived for a request within its timeout."""
    def __init__(self, command_type: str, timeout_seconds: float):
        self.command_type = command_type
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Request timeout for {command_type} after {timeout_seconds}s"
        )


class RemoteError(ChannelError):
    """The peer answered with a structured channel-level error."""
    def __init__(self, message: str, code: int | None = None):
        self.code = code
        super().__init__(message)


# ── Protocol / handlers / policy ───────────────────────────────


class ProtocolError(CodelinkError):
    """Malformed message or unknown command type."""


class HandlerError(CodelinkError):
    """A command handler failed while executing."""
    def __init__(self, command_type: str, reason: str):
        self.command_type = command_type
        self.reason = reason
        super().__init__(reason)


class PolicyDeniedError(CodelinkError):
    """A feature is disabled in the companion settings."""
    def __init__(self, feature: str, message: str):
        self.feature = feature
        super().__init__(message)


class DiffSessionBusyError(CodelinkError):
    """A diff review is already waiting for a decision."""
    def __init__(self, active_title: str):
        self.active_title = active_title
        super().__init__(
            "Another diff is already awaiting review "
            f"({active_title!r}); accept or reject it first"
        )
