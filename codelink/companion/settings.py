"""Feature settings, persistent in ~/.codelink/settings.json.

Three switches gate what an agent may do through the companion. All are
enabled by default. The file uses the nested form

    {"diffing": {"enabled": true},
     "fileOpening": {"enabled": true},
     "shellCommands": {"enabled": true}}
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..config import CODELINK_HOME
from ..shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)

SETTINGS_PATH = CODELINK_HOME / "settings.json"

# attribute name -> key in the settings file
_WIRE_KEYS = {
    "diffing": "diffing",
    "file_opening": "fileOpening",
    "shell_commands": "shellCommands",
}


@dataclass
class FeatureSettings:
    """Feature switches.

    Attributes:
        diffing: Show diffs for review. When off, every diff is
            auto-accepted.
        file_opening: Allow agents to open files.
        shell_commands: Allow agents to run shell commands.
    """

    diffing: bool = True
    file_opening: bool = True
    shell_commands: bool = True

    def validate(self) -> None:
        """Reset any non-boolean value to its default."""
        for name in _WIRE_KEYS:
            if not isinstance(getattr(self, name), bool):
                setattr(self, name, True)

    def to_dict(self) -> dict[str, Any]:
        return {
            wire: {"enabled": getattr(self, name)}
            for name, wire in _WIRE_KEYS.items()
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeatureSettings:
        """Build settings from the nested form; missing keys keep defaults."""
        settings = cls()
        for name, wire in _WIRE_KEYS.items():
            section = data.get(wire)
            if isinstance(section, dict) and "enabled" in section:
                setattr(settings, name, section["enabled"])
        settings.validate()
        return settings

    def save(self, path: Path | None = None) -> None:
        """Persist settings to disk."""
        target = path or SETTINGS_PATH
        try:
            atomic_write_json(target, self.to_dict())
        except OSError as exc:
            logger.warning("Failed to save settings to %s: %s", target, exc)

    @classmethod
    def load(cls, path: Path | None = None) -> FeatureSettings:
        """Load settings from disk, returning defaults if missing/corrupt."""
        target = path or SETTINGS_PATH
        try:
            data = json.loads(target.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.debug("Settings file not found at %s; using defaults", target)
            return cls()
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to load settings from %s (%s); using defaults", target, exc)
            return cls()
        if not isinstance(data, dict):
            logger.warning("Settings file %s is not a JSON object; using defaults", target)
            return cls()
        settings = cls.from_dict(data)
        logger.debug("Loaded settings from %s: %s", target, settings)
        return settings
