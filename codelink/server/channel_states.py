"""RPC channel state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    DISCONNECTED ──> CONNECTING ──> CONNECTED ──┬──> DISCONNECTED
                                                │
                                                └──> RECONNECTING

    RECONNECTING ──> CONNECTING ──┬──> CONNECTED
                                  │
                                  └──> RECONNECTING  (next backoff step)

    RECONNECTING ──> FAILED  (attempts exhausted)

    FAILED leaves only through an explicit connect or disconnect.
"""
from __future__ import annotations

from enum import Enum


class ChannelState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


VALID_TRANSITIONS: dict[ChannelState, set[ChannelState]] = {
    ChannelState.DISCONNECTED: {
        ChannelState.CONNECTING,
        ChannelState.RECONNECTING,
    },
    ChannelState.CONNECTING: {
        ChannelState.CONNECTED,
        ChannelState.DISCONNECTED,
        ChannelState.RECONNECTING,  # failed attempt inside a retry loop
    },
    ChannelState.CONNECTED: {
        ChannelState.DISCONNECTED,
        ChannelState.RECONNECTING,
    },
    ChannelState.RECONNECTING: {
        ChannelState.CONNECTING,
        ChannelState.DISCONNECTED,
        ChannelState.FAILED,
    },
    ChannelState.FAILED: {
        ChannelState.CONNECTING,  # explicit connect()/force_reconnect()
        ChannelState.DISCONNECTED,
    },
}


def validate_transition(current: ChannelState, target: ChannelState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none"
        raise ValueError(
            f"Invalid channel transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before reconnect ``attempt`` (1-based), capped at max_delay."""
    if attempt < 1:
        return 0.0
    return min(base_delay * (2 ** (attempt - 1)), max_delay)
