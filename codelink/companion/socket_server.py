"""TCP server accepting commands from the agent-facing server.

Protocol: newline-delimited JSON over TCP on 127.0.0.1 (see
shared/protocol.py).

Requests carrying an ``id`` run concurrently, so a diff waiting on the
user does not hold up a ping on the same connection; the response echoes
the id. Requests without an id are handled one at a time and answered in
the order they arrived. When a client goes away, its unanswered
requests are cancelled, which also withdraws a diff it was waiting on.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from ..shared.protocol import encode_message, split_frames
from .dispatcher import CommandDispatcher

logger = logging.getLogger(__name__)

_READ_CHUNK = 65536
# Seconds stop() waits for handlers to finish before cancelling them.
_STOP_GRACE = 1.0


class CompanionServer:
    """Loopback server bound to an ephemeral port."""

    def __init__(self, dispatcher: CommandDispatcher, host: str = "127.0.0.1") -> None:
        self._dispatcher = dispatcher
        self._host = host
        self._server: asyncio.Server | None = None
        self._port: int = 0
        self._connections: dict[asyncio.Task, asyncio.StreamWriter] = {}

    @property
    def port(self) -> int:
        return self._port

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def start(self) -> int:
        """Start the TCP server on a random available port. Returns the port."""
        self._server = await asyncio.start_server(
            self._handle_client, self._host, 0,
        )
        addr = self._server.sockets[0].getsockname()
        self._port = addr[1]
        logger.info("Companion server listening on %s:%d", self._host, self._port)
        return self._port

    async def stop(self) -> None:
        """Stop the TCP server and close all connections."""
        if self._server:
            self._server.close()
        # Closing the socket ends each handler's read loop with EOF.
        for writer in list(self._connections.values()):
            writer.close()
        handlers = list(self._connections)
        if handlers:
            _, stuck = await asyncio.wait(handlers, timeout=_STOP_GRACE)
            for task in stuck:
                task.cancel()
            if stuck:
                await asyncio.wait(stuck)
        self._connections.clear()
        if self._server:
            await self._server.wait_closed()
            logger.info("Companion server stopped (port=%d)", self._port)
            self._server = None

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Serve one connection until the peer closes it."""
        peer = writer.get_extra_info("peername")
        logger.info("Companion client connected: %s", peer)
        task = asyncio.current_task()
        if task:
            self._connections[task] = writer
        write_lock = asyncio.Lock()
        in_flight: set[asyncio.Task] = set()
        buffer = b""
        try:
            while True:
                chunk = await reader.read(_READ_CHUNK)
                if not chunk:
                    break
                buffer += chunk
                lines, buffer = split_frames(buffer)
                for line in lines:
                    await self._handle_line(line, writer, write_lock, in_flight)

            # Clients that send a single document without a trailing newline.
            if buffer.strip():
                await self._handle_line(
                    buffer, writer, write_lock, in_flight, inline=True,
                )
        except ConnectionError as exc:
            logger.info("Companion client %s dropped: %s", peer, exc)
        finally:
            # The requester is gone; nobody will read these answers.
            abandoned = [t for t in in_flight if not t.done()]
            for pending in abandoned:
                pending.cancel()
            if abandoned:
                logger.info(
                    "Cancelled %d in-flight request(s) from %s",
                    len(abandoned), peer,
                )
            if task:
                self._connections.pop(task, None)
            writer.close()
            logger.info("Companion client disconnected: %s", peer)

    async def _handle_line(
        self,
        line: bytes,
        writer: asyncio.StreamWriter,
        write_lock: asyncio.Lock,
        in_flight: set[asyncio.Task],
        inline: bool = False,
    ) -> None:
        try:
            payload = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Invalid JSON from client: %r", line[:200])
            await self._write(writer, write_lock, {
                "success": False, "error": f"Invalid JSON: {exc}",
            })
            return

        request_id = payload.get("id") if isinstance(payload, dict) else None
        if request_id is None or inline:
            await self._respond(payload, request_id, writer, write_lock)
            return

        task = asyncio.get_running_loop().create_task(
            self._respond(payload, request_id, writer, write_lock),
        )
        in_flight.add(task)
        task.add_done_callback(in_flight.discard)

    async def _respond(
        self,
        payload: dict[str, Any],
        request_id: Any,
        writer: asyncio.StreamWriter,
        write_lock: asyncio.Lock,
    ) -> None:
        response = await self._dispatcher.dispatch(payload, request_id)
        await self._write(writer, write_lock, response)

    async def _write(
        self,
        writer: asyncio.StreamWriter,
        write_lock: asyncio.Lock,
        message: dict[str, Any],
    ) -> None:
        async with write_lock:
            if writer.is_closing():
                logger.warning(
                    "Dropping response %s: connection closed", message.get("id"),
                )
                return
            try:
                writer.write(encode_message(message))
                await writer.drain()
            except ConnectionError as exc:
                logger.warning(
                    "Failed to write response %s: %s", message.get("id"), exc,
                )
