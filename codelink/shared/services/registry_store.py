"""Shared discovery registry: workspace path -> companion port.

Each editor companion writes its own entries into a JSON object kept in
two locations (the platform temp directory and a fixed /tmp path) so a
server running in a sandbox that can only see one of them still finds
it. There is no lock: every write is a whole-file read-modify-write and
a lost update is repaired by the owner's next lifecycle event.
"""
from __future__ import annotations

import json
import logging
import tempfile
from collections.abc import Mapping, Sequence
from pathlib import Path

from .durable_write import atomic_write_json

logger = logging.getLogger(__name__)

REGISTRY_FILENAME = "codelink-editor-registry.json"
FALLBACK_REGISTRY_DIR = Path("/tmp")


def default_registry_paths() -> tuple[Path, ...]:
    """Primary (OS temp dir) and fallback (/tmp) registry locations."""
    primary = Path(tempfile.gettempdir()) / REGISTRY_FILENAME
    fallback = FALLBACK_REGISTRY_DIR / REGISTRY_FILENAME
    if primary == fallback:
        return (primary,)
    return (primary, fallback)


class RegistryStore:
    """Best-effort reader/writer for the registry files.

    Nothing here raises on a missing, unreadable or corrupt file: reads
    fall back to "not found" or an empty mapping and write failures are
    logged.
    """

    def __init__(self, paths: Sequence[Path | str] | None = None) -> None:
        raw = paths if paths else default_registry_paths()
        unique: list[Path] = []
        for p in raw:
            path = Path(p)
            if path not in unique:
                unique.append(path)
        self._paths: tuple[Path, ...] = tuple(unique)

    @property
    def paths(self) -> tuple[Path, ...]:
        return self._paths

    # ── Single-file operations ──

    @staticmethod
    def load(path: Path | str) -> dict[str, int] | None:
        """Read one registry file.

        Returns None when the file does not exist or cannot be read, and
        a (possibly empty) mapping otherwise. Entries whose value is not
        an integer port are dropped.
        """
        target = Path(path)
        try:
            text = target.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.debug("Could not read registry %s: %s", target, exc)
            return None

        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Registry %s is not valid JSON; treating as empty", target)
            return {}
        if not isinstance(data, dict):
            logger.warning("Registry %s is not a JSON object; treating as empty", target)
            return {}

        registry: dict[str, int] = {}
        for workspace, port in data.items():
            if isinstance(port, bool) or not isinstance(port, int):
                logger.debug("Ignoring registry entry %r -> %r", workspace, port)
                continue
            registry[str(workspace)] = port
        return registry

    @classmethod
    def merge(cls, path: Path | str, entries: Mapping[str, int]) -> None:
        """Add or overwrite ``entries`` in one registry file.

        Entries belonging to other instances are preserved. Raises OSError
        if the file cannot be written; callers that write several
        locations use merge_all(), which logs instead.
        """
        target = Path(path)
        registry = cls.load(target)
        if registry is None:
            logger.info("Creating new registry at %s", target)
            registry = {}
        registry.update(entries)
        atomic_write_json(target, registry)

    @classmethod
    def remove_by_port(cls, path: Path | str, port: int) -> int:
        """Delete every entry pointing at ``port``; keys are never matched.

        Returns the number of entries removed. A missing file means there
        is nothing to clean up.
        """
        target = Path(path)
        registry = cls.load(target)
        if registry is None:
            logger.debug("No registry to clean up at %s", target)
            return 0
        kept = {k: v for k, v in registry.items() if v != port}
        removed = len(registry) - len(kept)
        if removed:
            atomic_write_json(target, kept)
        return removed

    # ── Multi-location operations ──

    def load_first(self) -> dict[str, int] | None:
        """Return the first registry that can be read, in path order."""
        for path in self._paths:
            registry = self.load(path)
            if registry is not None:
                logger.debug("Found editor registry at %s", path)
                return registry
            logger.debug("Could not read registry from %s", path)
        logger.info("Could not find editor registry in any location")
        return None

    def merge_all(self, entries: Mapping[str, int]) -> list[Path]:
        """Merge ``entries`` into every location. Returns the paths written."""
        written: list[Path] = []
        for path in self._paths:
            try:
                self.merge(path, entries)
                written.append(path)
            except OSError as exc:
                logger.warning("Failed to update registry %s: %s", path, exc)
        return written

    def remove_port_all(self, port: int) -> int:
        """Remove ``port`` from every location. Returns entries removed."""
        removed = 0
        for path in self._paths:
            try:
                removed += self.remove_by_port(path, port)
            except OSError as exc:
                logger.warning("Failed to clean registry %s: %s", path, exc)
        return removed
