"""YAML configuration loader.

One file configures both processes. Values from YAML override the
CODELINK_* environment; anything absent keeps its env/default value.

Example YAML:
    channel:
      connect_timeout: 5
      request_timeout: 15
      reconnect_attempts: 3

    server:
      log_level: DEBUG
      registry_paths:
        - /tmp/codelink-editor-registry.json

    companion:
      workspace_folders:
        - /home/me/project
      settings_path: ~/.codelink/settings.json
      log_file: ~/.codelink/logs/companion.log
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from .config import ChannelConfig, CompanionConfig, ServerConfig

logger = logging.getLogger(__name__)

_PATH_FIELDS = {"settings_path", "log_file"}
_PATH_LIST_FIELDS = {"registry_paths"}


@dataclass
class CodelinkConfig:
    """Complete parsed configuration for both processes."""
    server: ServerConfig
    companion: CompanionConfig


def _apply_section(
    target: Any,
    section: Any,
    section_name: str,
    skip: set[str] | None = None,
) -> None:
    """Copy known keys of a YAML mapping onto a config dataclass."""
    if section is None:
        return
    if not isinstance(section, dict):
        logger.warning(
            "load_yaml_config: section %r is not a mapping; ignored",
            section_name,
        )
        return
    known = {f.name for f in fields(target)} - (skip or set())
    for key, value in section.items():
        if key not in known:
            logger.warning(
                "load_yaml_config: unknown key %s.%s ignored", section_name, key,
            )
            continue
        if key in _PATH_FIELDS and value is not None:
            value = Path(str(value)).expanduser()
        elif key in _PATH_LIST_FIELDS and value is not None:
            if not isinstance(value, list):
                value = [value]
            value = [Path(str(p)).expanduser() for p in value]
        elif key == "workspace_folders" and value is not None:
            if not isinstance(value, list):
                value = [value]
            value = [str(Path(str(p)).expanduser()) for p in value]
        setattr(target, key, value)


def load_yaml_config(path: str | Path) -> CodelinkConfig:
    """Load a YAML config file layered over the environment.

    A missing file yields the environment/default configuration. A file
    that is not valid YAML raises yaml.YAMLError.
    """
    path = Path(path).expanduser()
    server = ServerConfig.from_env()
    companion = CompanionConfig.from_env()

    if not path.is_file():
        logger.warning(
            "load_yaml_config: %s not found; using environment defaults", path,
        )
        return CodelinkConfig(server=server, companion=companion)

    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        logger.warning("load_yaml_config: %s is not a mapping; ignored", path)
        return CodelinkConfig(server=server, companion=companion)

    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sorted(raw)) if raw else "(empty)",
    )

    channel = ChannelConfig.from_env()
    _apply_section(channel, raw.get("channel"), "channel")
    server.channel = channel
    _apply_section(
        server, raw.get("server"), "server",
        skip={"channel", "channel_observer"},
    )
    _apply_section(companion, raw.get("companion"), "companion")

    return CodelinkConfig(server=server, companion=companion)
