# =============================================================================
# livechannel -- Type Definitions
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .constants import WS_CLOSE_NORMAL


class ChannelState(str, Enum):
    """Persistent channel lifecycle state.

    Typical flow: IDLE -> CONNECTING -> OPEN -> RECONNECTING -> CONNECTING.
    CLOSING is transient, CLOSED is terminal.
    """

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class CloseInfo:
    """Why a transport went away.

    Attributes:
        code: WebSocket-style close code (1000 = normal closure).
        reason: Human-readable reason, possibly empty.
    """

    code: int = WS_CLOSE_NORMAL
    reason: str = ""

    @property
    def is_normal(self) -> bool:
        return self.code == WS_CLOSE_NORMAL


@dataclass(frozen=True, slots=True)
class FailureResult:
    """Outcome of :meth:`BackoffController.record_failure`."""

    scheduled: bool
    delay: float | None = None


@dataclass
class ChannelStats:
    """Counters for a single persistent channel."""

    messages_received: int = 0
    messages_sent: int = 0
    messages_queued: int = 0
    messages_dropped: int = 0
    reconnect_count: int = 0
    connected_since: float | None = None
