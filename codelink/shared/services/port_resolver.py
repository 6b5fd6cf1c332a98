"""Pick the companion port that serves a project path.

Several editor windows may be registered at once. Matching runs in a
fixed order and the first rule that produces a candidate wins:

    1. exact path match
    2. target inside a registered workspace (deepest workspace first)
    3. registered workspace inside the target (shallowest first)

Path prefixes are compared on separator boundaries, so ``/foo2`` never
matches ``/foo``.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Mapping

logger = logging.getLogger(__name__)


def normalize_path(path: str) -> str:
    """Absolute, separator-normalized, case-normalized form of ``path``."""
    return os.path.normcase(os.path.abspath(os.path.expanduser(path)))


def _is_within(child: str, parent: str) -> bool:
    if parent.endswith(os.sep):
        return child.startswith(parent) and child != parent
    return child.startswith(parent + os.sep)


def resolve_port(target_path: str, registry: Mapping[str, int]) -> int | None:
    """Return the port for ``target_path`` or None when nothing matches.

    Never falls back to an unrelated entry; see first_available_port().
    """
    if not target_path or not registry:
        return None
    target = normalize_path(target_path)

    normalized: list[tuple[str, str, int]] = []
    for key, port in sorted(registry.items()):
        # Synthetic keys such as "no-workspace-<pid>" are not paths.
        if not os.path.isabs(os.path.expanduser(key)):
            continue
        normalized.append((normalize_path(key), key, port))

    for norm_key, key, port in normalized:
        if norm_key == target:
            logger.debug("Found exact workspace match %s -> %d", key, port)
            return port

    ancestors = [
        (norm_key, key, port) for norm_key, key, port in normalized
        if _is_within(target, norm_key)
    ]
    if ancestors:
        norm_key, key, port = max(ancestors, key=lambda item: len(item[0]))
        logger.debug("Found enclosing workspace %s -> %d", key, port)
        return port

    descendants = [
        (norm_key, key, port) for norm_key, key, port in normalized
        if _is_within(norm_key, target)
    ]
    if descendants:
        norm_key, key, port = min(descendants, key=lambda item: len(item[0]))
        logger.debug("Found nested workspace %s -> %d", key, port)
        return port

    logger.debug("No matching workspace for %s", target)
    return None


def first_available_port(registry: Mapping[str, int]) -> int | None:
    """Any registered port, for operations that may target any editor."""
    for port in registry.values():
        return port
    return None
