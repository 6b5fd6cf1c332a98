"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CODELINK_* env vars
or a YAML file (see yaml_config.py). Config objects are passed to the
components that need them; nothing reads global state at call time.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from .shared.services.registry_store import default_registry_paths

if TYPE_CHECKING:
    from .server.events import ChannelEvent

logger = logging.getLogger(__name__)

# Optional callback observing RPC channel state changes.
# Signature: def callback(event: ChannelEvent) -> None
ChannelObserver = Callable[["ChannelEvent"], None]

CODELINK_HOME = Path.home() / ".codelink"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r (not a number)", name, raw)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r (not an integer)", name, raw)
        return default


def _env_paths(name: str) -> list[Path]:
    raw = os.getenv(name, "")
    return [Path(p) for p in raw.split(os.pathsep) if p.strip()]


@dataclass
class ChannelConfig:
    """RPC channel timing and retry settings (seconds)."""

    host: str = "127.0.0.1"
    connect_timeout: float = 10.0
    # Default timeout for ordinary requests.
    # Set to 0 (or a negative value) to wait indefinitely.
    request_timeout: float = 10.0
    ping_timeout: float = 5.0
    # Backoff: min(reconnect_delay * 2**(attempt-1), max_reconnect_delay)
    reconnect_delay: float = 1.0
    max_reconnect_delay: float = 30.0
    reconnect_attempts: int = 5

    @classmethod
    def from_env(cls) -> ChannelConfig:
        return cls(
            host=os.getenv("CODELINK_HOST", cls.host),
            connect_timeout=_env_float(
                "CODELINK_CONNECT_TIMEOUT", cls.connect_timeout,
            ),
            request_timeout=_env_float(
                "CODELINK_REQUEST_TIMEOUT", cls.request_timeout,
            ),
            ping_timeout=_env_float("CODELINK_PING_TIMEOUT", cls.ping_timeout),
            reconnect_delay=_env_float(
                "CODELINK_RECONNECT_DELAY", cls.reconnect_delay,
            ),
            max_reconnect_delay=_env_float(
                "CODELINK_MAX_RECONNECT_DELAY", cls.max_reconnect_delay,
            ),
            reconnect_attempts=_env_int(
                "CODELINK_RECONNECT_ATTEMPTS", cls.reconnect_attempts,
            ),
        )


@dataclass
class ServerConfig:
    """Agent-facing MCP server configuration."""

    channel: ChannelConfig = field(default_factory=ChannelConfig)
    registry_paths: list[Path] = field(
        default_factory=lambda: list(default_registry_paths()),
    )
    log_level: str = "INFO"

    # Optional observer attached to every channel the server opens.
    channel_observer: ChannelObserver | None = field(default=None, repr=False)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load configuration from CODELINK_* environment variables."""
        overrides = {
            k: v for k, v in os.environ.items() if k.startswith("CODELINK_")
        }
        if overrides:
            logger.info(
                "ServerConfig.from_env: CODELINK_* overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(overrides.items())),
            )
        config = cls(
            channel=ChannelConfig.from_env(),
            log_level=os.getenv("CODELINK_LOG_LEVEL", cls.log_level),
        )
        registry_paths = _env_paths("CODELINK_REGISTRY_PATHS")
        if registry_paths:
            config.registry_paths = registry_paths
        return config


@dataclass
class CompanionConfig:
    """Editor companion configuration."""

    host: str = "127.0.0.1"
    # Workspace folders this companion serves. Empty means "no workspace"
    # and is registered under a synthetic no-workspace-<pid> key.
    workspace_folders: list[str] = field(default_factory=list)
    registry_paths: list[Path] = field(
        default_factory=lambda: list(default_registry_paths()),
    )
    settings_path: Path = field(
        default_factory=lambda: CODELINK_HOME / "settings.json",
    )
    log_level: str = "INFO"
    log_file: Path = field(
        default_factory=lambda: CODELINK_HOME / "logs" / "companion.log",
    )

    @classmethod
    def from_env(cls) -> CompanionConfig:
        """Load configuration from CODELINK_* environment variables."""
        config = cls(
            host=os.getenv("CODELINK_HOST", cls.host),
            workspace_folders=[
                str(p) for p in _env_paths("CODELINK_WORKSPACES")
            ],
            log_level=os.getenv("CODELINK_LOG_LEVEL", cls.log_level),
        )
        registry_paths = _env_paths("CODELINK_REGISTRY_PATHS")
        if registry_paths:
            config.registry_paths = registry_paths
        settings_path = os.getenv("CODELINK_SETTINGS_PATH")
        if settings_path:
            config.settings_path = Path(settings_path)
        log_file = os.getenv("CODELINK_LOG_FILE")
        if log_file:
            config.log_file = Path(log_file)
        logger.debug(
            "CompanionConfig.from_env: workspaces=%s registry=%s",
            config.workspace_folders, config.registry_paths,
        )
        return config
