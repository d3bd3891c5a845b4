# =============================================================================
# livechannel -- Outbound Queue
# =============================================================================
#
# Buffers outgoing payloads while the transport is not open and hands them
# back in enqueue order when it opens.  In-memory only: queued messages do
# not survive the process.
# =============================================================================

from __future__ import annotations

from collections import deque
from typing import Any

from ._logging import logger
from .serialization import Payload


class OutboundQueue:
    """FIFO of encoded payloads awaiting an open transport.

    Args:
        max_size: Maximum number of buffered payloads, ``None`` for no cap.
            When full, new payloads are rejected.
    """

    def __init__(self, *, max_size: int | None = None) -> None:
        self._max_size = max_size
        self._queue: deque[Payload] = deque()
        self._dropped = 0

    @property
    def size(self) -> int:
        return len(self._queue)

    @property
    def dropped(self) -> int:
        return self._dropped

    def enqueue(self, payload: Payload) -> bool:
        """Add a payload. Returns False if the queue is full."""
        if self._max_size is not None and len(self._queue) >= self._max_size:
            self._dropped += 1
            logger.debug("Outbound queue full (%d), dropping message", self._max_size)
            return False
        self._queue.append(payload)
        return True

    def drain(self) -> list[Payload]:
        """Return all queued payloads in enqueue order and clear the queue."""
        items = list(self._queue)
        self._queue.clear()
        return items

    def clear(self) -> None:
        self._queue.clear()

    def get_stats(self) -> dict[str, Any]:
        return {
            "size": len(self._queue),
            "capacity": self._max_size,
            "dropped": self._dropped,
        }
