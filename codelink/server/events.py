"""Events emitted by an RPC channel.

The event set is closed: observers switch on ChannelEventKind rather
than on free-form event names.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ChannelEventKind(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTED = "reconnected"
    RECONNECT_FAILED = "reconnect_failed"
    ERROR = "error"
    CONNECTION_CLOSED_ERROR = "connection_closed_error"
    MESSAGE = "message"
    PARSE_ERROR = "parse_error"
    PING = "ping"


@dataclass(frozen=True)
class ChannelEvent:
    """One state change or notification on a channel.

    ``attempt`` is set for RECONNECTED/RECONNECT_FAILED, ``error`` for
    failures, ``payload`` for MESSAGE and PING (elapsed time).
    """
    kind: ChannelEventKind
    port: int
    attempt: int = 0
    error: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
