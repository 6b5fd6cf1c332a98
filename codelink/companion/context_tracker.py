"""Files and line ranges the user has marked as agent context.

Persisted as {"files": [...], "lineRanges": {path: [{startLine, endLine}]}}
so the selection survives a companion restart.

The headless companion has no UI for marking files, so the selection is
seeded from the command line (`codelink-companion --include PATH[:START-END]`,
see parse_include) or by an editor plugin calling include(),
set_line_ranges() and friends.
"""
from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path

from ..shared.protocol import LineRange
from ..shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)

_RANGE_SUFFIX = re.compile(r":(\d+)(?:-(\d+))?$")


def parse_include(entry: str) -> tuple[str, LineRange | None]:
    """Parse ``PATH`` or ``PATH:START[-END]`` into an absolute path and range.

    Raises ValueError for an empty path or an inverted or zero-based range.
    """
    match = _RANGE_SUFFIX.search(entry)
    path = entry[:match.start()] if match else entry
    if not path:
        raise ValueError(f"no file path in {entry!r}")
    line_range = None
    if match:
        start = int(match.group(1))
        end = int(match.group(2) or start)
        if start < 1 or end < start:
            raise ValueError(f"bad line range in {entry!r}")
        line_range = LineRange(start, end)
    return os.path.abspath(path), line_range


class ContextTracker:
    """Included files plus optional 1-based line ranges per file."""

    def __init__(self, storage_path: Path | None = None) -> None:
        self._storage_path = storage_path
        self._files: list[str] = []
        self._ranges: dict[str, list[LineRange]] = {}
        if storage_path is not None:
            self._load()

    def included_files(self) -> list[str]:
        return list(self._files)

    def is_included(self, path: str) -> bool:
        return path in self._files

    def include(self, path: str) -> None:
        if path not in self._files:
            self._files.append(path)
            self._save()

    def exclude(self, path: str) -> None:
        """Drop a file and any line ranges stored for it."""
        if path in self._files:
            self._files.remove(path)
        self._ranges.pop(path, None)
        self._save()

    def toggle(self, path: str) -> bool:
        """Flip inclusion. Returns whether the file is now included."""
        if self.is_included(path):
            self.exclude(path)
        else:
            self.include(path)
        return self.is_included(path)

    def line_ranges(self, path: str) -> list[LineRange]:
        return list(self._ranges.get(path, []))

    def set_line_ranges(self, path: str, ranges: list[LineRange]) -> None:
        """Replace the ranges for ``path``; the file becomes included."""
        if path not in self._files:
            self._files.append(path)
        if ranges:
            self._ranges[path] = list(ranges)
        else:
            self._ranges.pop(path, None)
        self._save()

    def add_line_ranges(self, path: str, ranges: list[LineRange]) -> None:
        """Append ranges, skipping exact duplicates."""
        combined = self.line_ranges(path)
        for line_range in ranges:
            if line_range not in combined:
                combined.append(line_range)
        self.set_line_ranges(path, combined)

    def remove_line_range(self, path: str, line_range: LineRange) -> None:
        remaining = [r for r in self.line_ranges(path) if r != line_range]
        self.set_line_ranges(path, remaining)

    def seed(self, specs: list[tuple[str, LineRange | None]]) -> None:
        """Apply parsed --include entries on top of the stored selection."""
        for path, line_range in specs:
            if line_range is None:
                self.include(path)
            else:
                self.add_line_ranges(path, [line_range])

    def clear(self) -> None:
        self._files.clear()
        self._ranges.clear()
        self._save()

    def _load(self) -> None:
        try:
            data = json.loads(self._storage_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not load context from %s: %s", self._storage_path, exc)
            return
        if not isinstance(data, dict):
            return

        files = data.get("files")
        if isinstance(files, list):
            self._files = [str(f) for f in files if isinstance(f, str)]
        raw_ranges = data.get("lineRanges")
        if isinstance(raw_ranges, dict):
            for path, items in raw_ranges.items():
                if not isinstance(items, list):
                    continue
                try:
                    ranges = [
                        LineRange(int(item["startLine"]), int(item["endLine"]))
                        for item in items
                        if isinstance(item, dict)
                        and "startLine" in item and "endLine" in item
                    ]
                except (TypeError, ValueError):
                    logger.warning("Ignoring malformed line ranges for %s", path)
                    continue
                if ranges:
                    self._ranges[path] = ranges
        logger.debug(
            "Loaded %d context file(s) from %s", len(self._files), self._storage_path,
        )

    def _save(self) -> None:
        if self._storage_path is None:
            return
        data = {
            "files": self._files,
            "lineRanges": {
                path: [r.to_wire() for r in ranges]
                for path, ranges in self._ranges.items()
            },
        }
        try:
            atomic_write_json(self._storage_path, data)
        except OSError as exc:
            logger.warning("Could not save context to %s: %s", self._storage_path, exc)
