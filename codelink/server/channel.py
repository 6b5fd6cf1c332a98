"""Persistent request/response channel to one editor companion.

Protocol: newline-delimited JSON over TCP on 127.0.0.1 (see
shared/protocol.py). Every request carries a ``req_<n>`` id and the
companion echoes it, so responses are matched by id, not by order.

While the socket is down, outgoing messages wait in a FIFO queue that is
flushed on the next successful connect. An unexpected close schedules
reconnection with exponential backoff; once the attempts run out the
channel is FAILED and stays that way until someone calls connect() or
force_reconnect().
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from ..config import ChannelConfig, ChannelObserver
from ..errors import (
    CONNECTION_CLOSED_CODE,
    ChannelError,
    ChannelFailedError,
    ConnectionClosedError,
    ConnectTimeoutError,
    RemoteError,
    RequestTimeoutError,
)
from ..shared.protocol import (
    Command,
    PingCommand,
    Response,
    encode_message,
    split_frames,
)
from .channel_states import ChannelState, backoff_delay, validate_transition
from .events import ChannelEvent, ChannelEventKind

logger = logging.getLogger(__name__)

_READ_CHUNK = 65536


@dataclass
class PendingRequest:
    """A request waiting for its correlated response."""
    request_id: str
    command_type: str
    submitted_at: float
    timeout: float
    future: asyncio.Future = field(repr=False)
    # True once the bytes reached a socket; only these are lost on close.
    sent: bool = False


def _effective_timeout(timeout: float | None) -> float | None:
    if timeout is None or timeout <= 0:
        return None
    return timeout


class RpcChannel:
    """Correlated request/response channel with queueing and reconnection."""

    def __init__(
        self,
        port: int,
        config: ChannelConfig | None = None,
        observer: ChannelObserver | None = None,
    ) -> None:
        self._port = port
        self._config = config or ChannelConfig()
        self._observer = observer
        self._state = ChannelState.DISCONNECTED
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._pending: dict[str, PendingRequest] = {}
        self._queue: deque[tuple[bytes, str | None]] = deque()
        self._buffer = b""
        self._req_counter = 0
        self._explicit_disconnect = False
        self._connect_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    @property
    def port(self) -> int:
        return self._port

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ChannelState.CONNECTED

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    # ── Connection management ─────────────────────────────────────

    async def connect(self) -> None:
        """Open the socket. Raises ConnectTimeoutError or OSError."""
        async with self._connect_lock:
            if self._state is ChannelState.CONNECTED:
                return
            self._explicit_disconnect = False
            await self._cancel_reconnect()
            self._set_state(ChannelState.CONNECTING)
            try:
                reader, writer = await asyncio.wait_for(
                    self._open(),
                    timeout=_effective_timeout(self._config.connect_timeout),
                )
            except asyncio.TimeoutError:
                self._set_state(ChannelState.DISCONNECTED)
                logger.warning(
                    "Connect to port %d timed out after %.1fs",
                    self._port, self._config.connect_timeout,
                )
                raise ConnectTimeoutError(
                    self._port, self._config.connect_timeout,
                ) from None
            except OSError as exc:
                self._set_state(ChannelState.DISCONNECTED)
                logger.warning("Connect to port %d failed: %s", self._port, exc)
                self._emit(ChannelEventKind.ERROR, error=str(exc))
                raise
            await self._on_connected(reader, writer, attempt=0)

    async def disconnect(self) -> None:
        """Close the channel on purpose. No reconnection follows."""
        self._explicit_disconnect = True
        await self._cancel_reconnect()
        await self._teardown()
        self._reject_pending("Connection closed", sent_only=False)
        self._queue.clear()
        logger.info("Disconnected from port %d", self._port)

    async def force_reconnect(self) -> None:
        """Drop the current socket (if any) and connect again now."""
        logger.info("Forcing reconnect to port %d", self._port)
        await self._cancel_reconnect()
        await self._teardown()
        self._reject_pending("Connection closed", sent_only=True)
        await self.connect()

    async def _open(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        return await asyncio.open_connection(self._config.host, self._port)

    async def _on_connected(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        attempt: int,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._buffer = b""
        self._set_state(ChannelState.CONNECTED)
        self._read_task = asyncio.get_running_loop().create_task(
            self._read_loop(reader),
        )
        if attempt:
            logger.info(
                "Reconnected to port %d (attempt %d)", self._port, attempt,
            )
            self._emit(ChannelEventKind.RECONNECTED, attempt=attempt)
        else:
            logger.info("Connected to editor companion on port %d", self._port)
            self._emit(ChannelEventKind.CONNECTED)
        await self._flush_queue()

    async def _teardown(self) -> None:
        """Close the socket and stop the reader. Leaves state DISCONNECTED."""
        read_task, self._read_task = self._read_task, None
        if read_task and read_task is not asyncio.current_task():
            read_task.cancel()
            try:
                await read_task
            except asyncio.CancelledError:
                pass
        self._close_writer()
        previous = self._state
        if previous is not ChannelState.DISCONNECTED:
            self._set_state(ChannelState.DISCONNECTED)
        if previous is ChannelState.CONNECTED:
            self._emit(ChannelEventKind.DISCONNECTED)

    def _close_writer(self) -> None:
        writer, self._writer = self._writer, None
        self._reader = None
        if writer is not None:
            writer.close()

    def _connection_lost(self, error: str | None) -> None:
        """Handle an unexpected close of the current socket."""
        if self._state is not ChannelState.CONNECTED:
            return
        logger.warning(
            "Connection to port %d lost%s",
            self._port, f": {error}" if error else "",
        )
        read_task, self._read_task = self._read_task, None
        if read_task and read_task is not asyncio.current_task():
            read_task.cancel()
        self._close_writer()
        self._set_state(ChannelState.DISCONNECTED)
        self._emit(ChannelEventKind.DISCONNECTED, error=error)
        self._reject_pending("Connection closed", sent_only=True)
        if not self._explicit_disconnect:
            self._schedule_reconnect()

    # ── Reconnection ──────────────────────────────────────────────

    def _schedule_reconnect(self, immediate: bool = False) -> None:
        if self._state is ChannelState.FAILED:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            return
        self._set_state(ChannelState.RECONNECTING)
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_loop(immediate),
        )

    async def _reconnect_loop(self, immediate: bool) -> None:
        attempt = 0
        while True:
            attempt += 1
            if attempt > self._config.reconnect_attempts:
                self._fail(
                    f"gave up after {self._config.reconnect_attempts} "
                    "reconnection attempts",
                    attempt=attempt,
                )
                return

            if immediate and attempt == 1:
                delay = 0.0
            else:
                delay = backoff_delay(
                    attempt,
                    self._config.reconnect_delay,
                    self._config.max_reconnect_delay,
                )
            if delay > 0:
                logger.info(
                    "Reconnecting to port %d in %.1fs (attempt %d/%d)",
                    self._port, delay, attempt,
                    self._config.reconnect_attempts,
                )
                await asyncio.sleep(delay)

            self._set_state(ChannelState.CONNECTING)
            try:
                reader, writer = await asyncio.wait_for(
                    self._open(),
                    timeout=_effective_timeout(self._config.connect_timeout),
                )
            except (OSError, asyncio.TimeoutError) as exc:
                logger.warning(
                    "Reconnect attempt %d to port %d failed: %s",
                    attempt, self._port, str(exc) or type(exc).__name__,
                )
                self._set_state(ChannelState.RECONNECTING)
                continue

            self._reconnect_task = None
            await self._on_connected(reader, writer, attempt=attempt)
            return

    async def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is None or task is asyncio.current_task():
            return
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._state in (ChannelState.RECONNECTING, ChannelState.CONNECTING):
            self._set_state(ChannelState.DISCONNECTED)

    def _fail(self, reason: str, attempt: int) -> None:
        logger.error("Channel to port %d failed: %s", self._port, reason)
        self._set_state(ChannelState.FAILED)
        self._emit(
            ChannelEventKind.RECONNECT_FAILED, attempt=attempt, error=reason,
        )
        self._reject_pending(f"Connection closed: {reason}", sent_only=False)
        self._queue.clear()

    # ── Sending ───────────────────────────────────────────────────

    async def send(
        self,
        message: dict[str, Any] | bytes,
        request_id: str | None = None,
    ) -> None:
        """Write one message, or queue it until the socket is back.

        Raises ChannelFailedError once reconnection has given up.
        """
        if self._state is ChannelState.FAILED:
            raise ChannelFailedError(
                self._port, "reconnection attempts exhausted",
            )
        data = message if isinstance(message, bytes) else encode_message(message)
        self._queue.append((data, request_id))

        if self._state is ChannelState.CONNECTED:
            await self._flush_queue()
        elif self._state is ChannelState.DISCONNECTED:
            logger.debug(
                "Port %d not connected; queued message and reconnecting",
                self._port,
            )
            self._explicit_disconnect = False
            self._schedule_reconnect(immediate=True)

    async def _flush_queue(self) -> None:
        async with self._write_lock:
            while self._queue and self._state is ChannelState.CONNECTED:
                writer = self._writer
                if writer is None:
                    break
                data, request_id = self._queue.popleft()
                try:
                    writer.write(data)
                    await writer.drain()
                except (OSError, RuntimeError) as exc:
                    self._queue.appendleft((data, request_id))
                    logger.warning(
                        "Write to port %d failed, %d message(s) kept queued: %s",
                        self._port, len(self._queue), exc,
                    )
                    self._connection_lost(str(exc))
                    return
                pending = self._pending.get(request_id) if request_id else None
                if pending is not None:
                    pending.sent = True

    async def send_request(
        self,
        command_type: str,
        payload: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Response:
        """Send a request and wait for its response.

        ``timeout`` defaults to the configured request timeout; zero or a
        negative value waits indefinitely. Raises RequestTimeoutError,
        ConnectionClosedError, RemoteError or ChannelFailedError.
        """
        if timeout is None:
            timeout = self._config.request_timeout
        self._req_counter += 1
        request_id = f"req_{self._req_counter}"
        message: dict[str, Any] = {"id": request_id, "type": command_type}
        for key, value in (payload or {}).items():
            if key not in ("id", "type"):
                message[key] = value

        loop = asyncio.get_running_loop()
        pending = PendingRequest(
            request_id=request_id,
            command_type=command_type,
            submitted_at=loop.time(),
            timeout=timeout,
            future=loop.create_future(),
        )
        self._pending[request_id] = pending
        try:
            await self.send(message, request_id)
            return await asyncio.wait_for(
                pending.future, timeout=_effective_timeout(timeout),
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Request %s (%s) to port %d timed out after %.1fs",
                request_id, command_type, self._port, timeout,
            )
            raise RequestTimeoutError(command_type, timeout) from None
        finally:
            self._pending.pop(request_id, None)

    async def request(
        self,
        command: Command,
        timeout: float | None = None,
    ) -> Response:
        """Send a typed command; see send_request()."""
        wire = command.to_wire()
        command_type = wire.pop("type")
        return await self.send_request(command_type, wire, timeout)

    async def ping(self, timeout: float | None = None) -> bool:
        """True if the companion answers a ping within ``timeout``."""
        if timeout is None:
            timeout = self._config.ping_timeout
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            response = await self.request(PingCommand(), timeout=timeout)
        except ChannelError as exc:
            logger.debug("Ping to port %d failed: %s", self._port, exc)
            return False
        elapsed = loop.time() - started
        self._emit(
            ChannelEventKind.PING,
            payload={"elapsed": elapsed, "alive": response.success},
        )
        return response.success

    async def handle_connection_closed_error(self) -> bool:
        """Recover after a -32000 response: reconnect, then verify with ping.

        Returns False when the companion is still unreachable.
        """
        logger.warning(
            "Connection closed error on port %d; attempting recovery",
            self._port,
        )
        try:
            await self.force_reconnect()
        except (ChannelError, OSError) as exc:
            logger.error("Recovery reconnect to port %d failed: %s", self._port, exc)
            return False
        if await self.ping():
            logger.info("Recovered connection to port %d", self._port)
            return True
        logger.error("Companion on port %d did not answer ping after reconnect", self._port)
        return False

    # ── Receiving ─────────────────────────────────────────────────

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        error: str | None = None
        try:
            while True:
                chunk = await reader.read(_READ_CHUNK)
                if not chunk:
                    break
                self._handle_data(chunk)
        except (OSError, asyncio.IncompleteReadError) as exc:
            error = str(exc)
        except Exception as exc:
            # Never leave the channel CONNECTED without a reader.
            logger.exception("Read loop for port %d crashed", self._port)
            error = str(exc) or type(exc).__name__
        self._connection_lost(error)

    def _handle_data(self, chunk: bytes) -> None:
        """Reassemble lines from ``chunk`` and dispatch each message."""
        self._buffer += chunk
        lines, self._buffer = split_frames(self._buffer)
        for line in lines:
            try:
                message = json.loads(line.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                logger.warning(
                    "Ignoring unparseable message from port %d: %r",
                    self._port, line[:200],
                )
                self._emit(ChannelEventKind.PARSE_ERROR, error=str(exc))
                continue
            if not isinstance(message, dict):
                logger.warning(
                    "Ignoring non-object message from port %d: %r",
                    self._port, message,
                )
                self._emit(
                    ChannelEventKind.PARSE_ERROR, error="message is not an object",
                )
                continue
            self._handle_message(message)

    def _handle_message(self, message: dict[str, Any]) -> None:
        request_id = message.get("id")
        if request_id is None:
            self._emit(ChannelEventKind.MESSAGE, payload=message)
            return
        if not isinstance(request_id, str):
            logger.warning(
                "Ignoring response with malformed id from port %d: %r",
                self._port, request_id,
            )
            self._emit(ChannelEventKind.PARSE_ERROR, error="response id is not a string")
            return

        pending = self._pending.pop(request_id, None)
        if pending is None or pending.future.done():
            logger.debug(
                "Dropping response for unknown request %s from port %d",
                request_id, self._port,
            )
            return

        error = message.get("error")
        if isinstance(error, dict):
            text = str(error.get("message") or "Remote error")
            code = error.get("code")
            if code == CONNECTION_CLOSED_CODE:
                pending.future.set_exception(ConnectionClosedError(text))
                self._emit(ChannelEventKind.CONNECTION_CLOSED_ERROR, error=text)
            else:
                pending.future.set_exception(RemoteError(text, code))
            return

        pending.future.set_result(Response.from_wire(message))

    # ── Helpers ───────────────────────────────────────────────────

    def _reject_pending(self, message: str, sent_only: bool) -> None:
        for request_id, pending in list(self._pending.items()):
            if sent_only and not pending.sent:
                continue
            del self._pending[request_id]
            if not pending.future.done():
                pending.future.set_exception(ConnectionClosedError(message))

    def _set_state(self, target: ChannelState) -> None:
        if target is self._state:
            return
        validate_transition(self._state, target)
        logger.debug(
            "Channel %d: %s -> %s", self._port, self._state.value, target.value,
        )
        self._state = target

    def _emit(self, kind: ChannelEventKind, **fields: Any) -> None:
        if self._observer is None:
            return
        try:
            self._observer(ChannelEvent(kind=kind, port=self._port, **fields))
        except Exception:
            logger.exception("Channel observer failed on %s", kind.value)
