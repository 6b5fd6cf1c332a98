"""Keeps this companion's registry entries in step with its lifetime.

    startup           bind the server, then register {folder: port}
    workspace change  register the new folder set
    shutdown          remove every entry pointing at our port, then close

Registry writes are best effort; a failed write is logged and the
companion keeps serving.
"""
from __future__ import annotations

import logging
import os

from ..shared.services.registry_store import RegistryStore
from .editor import EditorBackend
from .socket_server import CompanionServer

logger = logging.getLogger(__name__)


def no_workspace_key(pid: int | None = None) -> str:
    """Registry key for a window with no folder open."""
    return f"no-workspace-{pid if pid is not None else os.getpid()}"


class RegistryLifecycle:
    """Registry upkeep around a CompanionServer."""

    def __init__(
        self,
        server: CompanionServer,
        editor: EditorBackend,
        store: RegistryStore | None = None,
        pid: int | None = None,
    ) -> None:
        self._server = server
        self._editor = editor
        self._store = store or RegistryStore()
        self._pid = pid if pid is not None else os.getpid()

    @property
    def port(self) -> int:
        return self._server.port

    def workspace_keys(self, folders: list[str] | None = None) -> list[str]:
        if folders is None:
            folders = self._editor.workspace_folders()
        return list(folders) if folders else [no_workspace_key(self._pid)]

    async def startup(self) -> int:
        """Bind the server and register it. Returns the bound port."""
        port = await self._server.start()
        self._register(self.workspace_keys())
        return port

    async def workspace_changed(self, folders: list[str] | None = None) -> None:
        """Register the current (or given) folder set under our port."""
        if not self._server.port:
            logger.debug("Workspace changed before the server started; ignored")
            return
        self._register(self.workspace_keys(folders))
        logger.info("Port registry updated after workspace change")

    async def shutdown(self) -> None:
        """Unregister, then close the server."""
        port = self._server.port
        if port:
            removed = self._store.remove_port_all(port)
            logger.info("Removed %d registry entries for port %d", removed, port)
        await self._server.stop()

    def _register(self, keys: list[str]) -> None:
        port = self._server.port
        written = self._store.merge_all({key: port for key in keys})
        if written:
            logger.info(
                "Registered %s -> %d in %s",
                ", ".join(keys), port, ", ".join(str(p) for p in written),
            )
        else:
            logger.error("Could not write any registry file for port %d", port)
