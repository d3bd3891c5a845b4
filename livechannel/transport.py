# =============================================================================
# livechannel -- Transport Interface
# =============================================================================
#
# A transport wraps one physical connection attempt.  It reports what
# happens through four callback slots and never raises across an event
# boundary: I/O failures become on_error / on_close calls.
# =============================================================================

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Mapping

from ._logging import logger
from .constants import WS_CLOSE_ABNORMAL, WS_CLOSE_NORMAL
from .errors import ChannelUsageError, TransportError
from .serialization import Payload
from .sse import SSEEvent
from .types import CloseInfo


@dataclass
class TransportCallbacks:
    """Callback slots a channel registers on its transport."""

    on_open: Callable[[], Any] | None = None
    on_error: Callable[[Exception], Any] | None = None
    on_close: Callable[[CloseInfo], Any] | None = None
    on_message: Callable[[str | bytes], Any] | None = None
    on_event: Callable[[SSEEvent], Any] | None = None


class Transport(ABC):
    """One connection to a remote endpoint.

    Subclasses run their I/O in background tasks started by :meth:`open`
    and report through :attr:`callbacks`.  After :meth:`detach` no
    callback fires again, which lets a channel close a transport without
    hearing about it.

    Attributes:
        retries_natively: True when the transport re-opens by itself after
            a dropped connection (like a browser ``EventSource``).
    """

    retries_natively: bool = False

    def __init__(self, url: str, *, headers: Mapping[str, str] | None = None) -> None:
        self.url = url
        self.headers = dict(headers or {})
        self.callbacks = TransportCallbacks()
        self._closed = False
        self._tasks: set[asyncio.Task[Any]] = set()

    # -- Properties -----------------------------------------------------------

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether :meth:`send` would reach the wire right now."""

    @property
    def closed(self) -> bool:
        return self._closed

    # -- Lifecycle ------------------------------------------------------------

    @abstractmethod
    def open(self) -> None:
        """Start connecting. Returns immediately."""

    @abstractmethod
    def close(self, code: int = WS_CLOSE_NORMAL, reason: str = "") -> None:
        """Start shutting down. Returns immediately."""

    def send(self, payload: Payload) -> None:
        raise ChannelUsageError(f"{type(self).__name__} is receive-only")

    def detach(self) -> None:
        self.callbacks = TransportCallbacks()

    async def wait_closed(self) -> None:
        """Wait for every background task of this transport to finish."""
        tasks = list(self._tasks)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- Helpers for subclasses ----------------------------------------------

    def _fire_task(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _emit_crash(self, exc: Exception) -> None:
        """Report an unexpected background-task error as an abnormal close."""
        name = type(self).__name__
        logger.error("%s task failed: %s", name, exc, exc_info=exc)
        if not isinstance(exc, TransportError):
            exc = TransportError(f"{name} failed: {exc}")
        self._emit_error(exc)
        self._emit_close(CloseInfo(WS_CLOSE_ABNORMAL, str(exc)))

    def _emit_open(self) -> None:
        if self.callbacks.on_open is not None:
            self.callbacks.on_open()

    def _emit_error(self, exc: Exception) -> None:
        logger.warning("%s error: %s", type(self).__name__, exc)
        if self.callbacks.on_error is not None:
            self.callbacks.on_error(exc)

    def _emit_close(self, info: CloseInfo) -> None:
        if self.callbacks.on_close is not None:
            self.callbacks.on_close(info)

    def _emit_message(self, data: str | bytes) -> None:
        if self.callbacks.on_message is not None:
            self.callbacks.on_message(data)

    def _emit_event(self, event: SSEEvent) -> None:
        if self.callbacks.on_event is not None:
            self.callbacks.on_event(event)
