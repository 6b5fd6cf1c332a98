"""One RPC channel per project path, discovered through the registry."""
from __future__ import annotations

import logging
import os

from ..config import ServerConfig
from ..errors import (
    ChannelFailedError,
    ConnectionClosedError,
    RegistryNotFoundError,
    WorkspaceNotFoundError,
)
from ..shared.protocol import Command, Response
from ..shared.services.port_resolver import first_available_port, resolve_port
from ..shared.services.registry_store import RegistryStore
from .channel import RpcChannel
from .channel_states import ChannelState

logger = logging.getLogger(__name__)


class ChannelPool:
    """Caches channels keyed by absolute project path.

    A cached channel is replaced when the registry now names a different
    port for its path, or when the channel has given up reconnecting.
    """

    def __init__(
        self,
        config: ServerConfig | None = None,
        store: RegistryStore | None = None,
    ) -> None:
        self._config = config or ServerConfig()
        self._store = store or RegistryStore(self._config.registry_paths)
        self._by_path: dict[str, RpcChannel] = {}
        self._by_port: dict[int, RpcChannel] = {}

    @property
    def store(self) -> RegistryStore:
        return self._store

    def load_registry(self) -> dict[str, int]:
        """Current registry contents. Raises RegistryNotFoundError."""
        registry = self._store.load_first()
        if registry is None:
            raise RegistryNotFoundError([str(p) for p in self._store.paths])
        return registry

    def resolve_port(self, target_path: str) -> int:
        """Port of the companion serving ``target_path``.

        Raises RegistryNotFoundError or WorkspaceNotFoundError; never
        guesses an unrelated instance.
        """
        port = resolve_port(target_path, self.load_registry())
        if port is None:
            raise WorkspaceNotFoundError(target_path)
        logger.debug("Resolved %s to port %d", target_path, port)
        return port

    def any_port(self) -> int:
        """Any registered port. Raises RegistryNotFoundError."""
        port = first_available_port(self.load_registry())
        if port is None:
            raise RegistryNotFoundError([str(p) for p in self._store.paths])
        return port

    async def channel_for(self, target_path: str) -> RpcChannel:
        """Return the cached channel for ``target_path``, replacing stale ones."""
        key = os.path.abspath(os.path.expanduser(target_path))
        port = self.resolve_port(key)
        cached = self._by_path.get(key)
        if cached is not None:
            if cached.port == port and cached.state is not ChannelState.FAILED:
                return cached
            logger.info(
                "Replacing channel for %s (port %d -> %d, state %s)",
                key, cached.port, port, cached.state.value,
            )
            await self._discard(cached)
        channel = self.channel_for_port(port)
        self._by_path[key] = channel
        return channel

    def channel_for_port(self, port: int) -> RpcChannel:
        """Channel for a known port, shared by every path mapped to it."""
        channel = self._by_port.get(port)
        if channel is None or channel.state is ChannelState.FAILED:
            channel = RpcChannel(
                port,
                config=self._config.channel,
                observer=self._config.channel_observer,
            )
            self._by_port[port] = channel
        return channel

    async def request(
        self,
        target_path: str,
        command: Command,
        timeout: float | None = None,
    ) -> Response:
        """Send ``command`` to the companion for ``target_path``.

        A ConnectionClosedError triggers one recovery and one retry.
        Raises ChannelFailedError when recovery does not succeed.
        """
        channel = await self.channel_for(target_path)
        return await self._request_with_recovery(channel, command, timeout)

    async def request_port(
        self,
        port: int,
        command: Command,
        timeout: float | None = None,
    ) -> Response:
        channel = self.channel_for_port(port)
        return await self._request_with_recovery(channel, command, timeout)

    async def _request_with_recovery(
        self,
        channel: RpcChannel,
        command: Command,
        timeout: float | None,
    ) -> Response:
        if not channel.is_connected:
            await channel.connect()
        try:
            return await channel.request(command, timeout=timeout)
        except ConnectionClosedError as exc:
            logger.warning(
                "%s on port %d: %s; attempting recovery",
                command.type.value, channel.port, exc,
            )
            if not await channel.handle_connection_closed_error():
                raise ChannelFailedError(
                    channel.port, "connection closed and recovery failed",
                ) from exc
            return await channel.request(command, timeout=timeout)

    async def _discard(self, channel: RpcChannel) -> None:
        for key, cached in list(self._by_path.items()):
            if cached is channel:
                del self._by_path[key]
        if self._by_port.get(channel.port) is channel:
            del self._by_port[channel.port]
        await channel.disconnect()

    async def close(self) -> None:
        """Disconnect every channel."""
        channels = set(self._by_port.values()) | set(self._by_path.values())
        self._by_path.clear()
        self._by_port.clear()
        for channel in channels:
            await channel.disconnect()
        logger.debug("Closed %d channel(s)", len(channels))
