"""codelink companion: main application entry point.

Runs a headless editor companion in the terminal: binds a loopback
port, registers it for the given workspace folders, answers commands
from codelink-server and asks the user on the console before any diff
is applied. SIGINT/SIGTERM unregister and exit.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler

from .companion.console import ConsoleReviewer
from .companion.context_tracker import ContextTracker, parse_include
from .companion.diff_review import DiffReview
from .companion.dispatcher import CommandDispatcher
from .companion.editor import HeadlessEditor
from .companion.lifecycle import RegistryLifecycle
from .companion.settings import FeatureSettings
from .companion.socket_server import CompanionServer
from .config import CompanionConfig
from .shared.protocol import LineRange
from .shared.services.registry_store import RegistryStore
from .yaml_config import load_yaml_config

logger = logging.getLogger(__name__)


def configure_logging(config: CompanionConfig, verbose: bool = False) -> Path:
    """Root logger to a rotating file plus stderr. Returns the log file."""
    log_file = config.log_file
    log_file.parent.mkdir(parents=True, exist_ok=True)
    level_name = "DEBUG" if verbose else config.log_level.upper()

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


async def run_companion(
    config: CompanionConfig,
    stop: asyncio.Event | None = None,
    include: list[tuple[str, LineRange | None]] | None = None,
) -> None:
    """Serve until ``stop`` is set (or a termination signal arrives)."""
    stop = stop or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handler for %s not supported here", sig)

    if not config.settings_path.exists():
        FeatureSettings().save(config.settings_path)
    settings_path = config.settings_path

    reviewer = ConsoleReviewer()
    editor = HeadlessEditor(
        workspace_folders=config.workspace_folders,
        diff_presenter=reviewer.present,
    )
    review = DiffReview(editor)
    reviewer.attach(review)
    context = ContextTracker(settings_path.parent / "context.json")
    if include:
        context.seed(include)
        logger.info("Context now holds %d file(s)", len(context.included_files()))
    dispatcher = CommandDispatcher(
        editor,
        diff_review=review,
        context=context,
        settings=lambda: FeatureSettings.load(settings_path),
    )
    server = CompanionServer(dispatcher, host=config.host)
    lifecycle = RegistryLifecycle(
        server, editor, RegistryStore(config.registry_paths),
    )
    editor.on_workspace_change = lifecycle.workspace_changed

    port = await lifecycle.startup()
    logger.info(
        "Companion ready on port %d for %s",
        port, ", ".join(lifecycle.workspace_keys()),
    )
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down companion (port=%d)", port)
        await reviewer.close()
        await lifecycle.shutdown()


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="codelink-companion",
        description="Headless editor companion for codelink-server",
    )
    parser.add_argument(
        "--workspace", metavar="PATH", action="append", default=None,
        help="Workspace folder to serve (repeatable; default: current directory)",
    )
    parser.add_argument(
        "--include", metavar="PATH[:START-END]", action="append",
        type=parse_include, default=None,
        help="Add a file (optionally a line range) to the agent context (repeatable)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (see codelink.yaml_config)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    if args.config:
        config = load_yaml_config(args.config).companion
    else:
        config = CompanionConfig.from_env()
    if args.workspace:
        config.workspace_folders = [os.path.abspath(p) for p in args.workspace]
    elif not config.workspace_folders:
        config.workspace_folders = [str(Path.cwd())]

    log_file = configure_logging(config, verbose=args.verbose)
    logger.info(
        "Starting codelink companion cwd=%s config=%s log=%s",
        Path.cwd(), args.config or "<none>", log_file,
    )
    asyncio.run(run_companion(config, include=args.include))
    sys.exit(0)


if __name__ == "__main__":
    main()
