# =============================================================================
# livechannel -- Server-Sent Events Transport and Channel
# =============================================================================
#
# The transport behaves like a browser EventSource: it re-opens the stream
# by itself after a drop, waiting the server-provided retry interval and
# resending Last-Event-ID.  The channel only steps in (tearing the transport
# down and backing off) once failures pass the reconnect threshold.
# =============================================================================

from __future__ import annotations

import asyncio
from typing import Any, Callable, Mapping

import httpx

from ._logging import logger
from .channel import PersistentChannel
from .config import ReconnectConfig
from .constants import (
    CONNECTION_TIMEOUT,
    SSE_DEFAULT_RETRY,
    SSE_RECONNECT_JITTER,
    SSE_RECONNECT_THRESHOLD,
    WS_CLOSE_ABNORMAL,
    WS_CLOSE_NORMAL,
)
from .errors import TransportError
from .sse import SSEEvent, SSEParser
from .transport import Transport
from .types import CloseInfo

EventHandler = Callable[[Any], Any]


class EventSourceTransport(Transport):
    """Receive-only ``text/event-stream`` transport over httpx.

    A dropped stream is reported through ``on_error`` and re-opened after
    :attr:`retry_delay`.  A response that is not a 200 event stream is
    fatal: the transport closes with code 1006 and does not retry.

    Args:
        client: Shared ``httpx.AsyncClient``. When omitted the transport
            creates one and closes it on shutdown.
        retry_delay: Seconds between native retries until the server
            sends a ``retry:`` field.
        last_event_id: Resume point sent as ``Last-Event-ID``.
    """

    retries_natively = True

    def __init__(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
        retry_delay: float = SSE_DEFAULT_RETRY,
        last_event_id: str | None = None,
    ) -> None:
        super().__init__(url, headers=headers)
        self._client = client
        self._retry_delay = retry_delay
        self._last_event_id = last_event_id
        self._open = False
        self._closing = False
        self._run_task: asyncio.Task[None] | None = None

    @property
    def is_open(self) -> bool:
        return self._open and not self._closing

    @property
    def retry_delay(self) -> float:
        return self._retry_delay

    @property
    def last_event_id(self) -> str | None:
        return self._last_event_id

    def open(self) -> None:
        if self._run_task is not None:
            return
        self._run_task = self._fire_task(self._run())

    def close(self, code: int = WS_CLOSE_NORMAL, reason: str = "") -> None:
        if self._closing:
            return
        self._closing = True
        self._open = False
        if self._run_task is not None:
            self._run_task.cancel()
        else:
            self._closed = True

    # -- Internal -------------------------------------------------------------

    async def _run(self) -> None:
        client = self._client or httpx.AsyncClient(
            timeout=httpx.Timeout(CONNECTION_TIMEOUT, read=None)
        )
        try:
            while not self._closing:
                if not await self._read_stream(client):
                    return
                logger.debug("Event stream retrying in %.2fs", self._retry_delay)
                await asyncio.sleep(self._retry_delay)
        except asyncio.CancelledError:
            logger.debug("Event stream task cancelled")
        except Exception as exc:
            self._open = False
            if not self._closing:
                self._emit_crash(exc)
        finally:
            self._open = False
            if self._client is None:
                await client.aclose()
            self._closed = True

    async def _read_stream(self, client: httpx.AsyncClient) -> bool:
        """Read one response to its end. Returns False on a fatal response."""
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        headers.update(self.headers)
        if self._last_event_id:
            headers["Last-Event-ID"] = self._last_event_id
        parser = SSEParser(self._last_event_id)

        try:
            async with client.stream("GET", self.url, headers=headers) as response:
                content_type = response.headers.get("content-type", "")
                if response.status_code != 200 or not content_type.startswith(
                    "text/event-stream"
                ):
                    reason = f"Event stream rejected: HTTP {response.status_code} {content_type}"
                    self._open = False
                    self._emit_close(CloseInfo(WS_CLOSE_ABNORMAL, reason.strip()))
                    return False

                self._open = True
                self._emit_open()
                async for chunk in response.aiter_bytes():
                    for event in parser.feed(chunk):
                        self._last_event_id = parser.last_event_id
                        self._emit_event(event)
                    if parser.retry is not None:
                        self._retry_delay = parser.retry / 1000
            error = TransportError("Event stream ended")
        except httpx.HTTPError as exc:
            error = TransportError(f"Event stream error: {exc}")

        self._open = False
        if not self._closing:
            self._emit_error(error)
        return True


class EventStreamChannel(PersistentChannel):
    """Persistent receive-only server-sent events channel.

    Default ``message`` events go to the message handler; named events go
    to handlers registered with :meth:`on`.  :meth:`send` raises
    :class:`ChannelUsageError`.

    Example::

        channel = EventStreamChannel("https://api.example.com/events")

        @channel.on("status")
        def on_status(data):
            print("status", data)

        channel.set_handler(print)
        channel.connect()
    """

    duplex = False
    default_reconnect = ReconnectConfig(
        threshold=SSE_RECONNECT_THRESHOLD, jitter=SSE_RECONNECT_JITTER
    )

    def __init__(
        self,
        url: Any,
        *,
        client: httpx.AsyncClient | None = None,
        retry_delay: float = SSE_DEFAULT_RETRY,
        **kwargs: Any,
    ) -> None:
        super().__init__(url, **kwargs)
        self._client = client
        self._retry_delay = retry_delay
        self._event_handlers: dict[str, list[EventHandler]] = {}
        self._awaiting_first_message = False
        self._last_event_id: str | None = None

    @property
    def last_event_id(self) -> str | None:
        return self._last_event_id

    # -- Named events ---------------------------------------------------------

    def on(self, event_type: str) -> Callable[[EventHandler], EventHandler]:
        """Decorator registering a handler for a named event.

        Usage::

            @channel.on("price")
            async def handle(data):
                ...
        """

        def decorator(func: EventHandler) -> EventHandler:
            self._event_handlers.setdefault(event_type, []).append(func)
            return func

        return decorator

    def off(self, event_type: str, handler: EventHandler | None = None) -> None:
        """Remove one handler, or all handlers for *event_type*."""
        if handler is None:
            self._event_handlers.pop(event_type, None)
            return
        handlers = self._event_handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    # -- Transport hooks ------------------------------------------------------

    def _default_transport(self, url: str, headers: Mapping[str, str]) -> Transport:
        return EventSourceTransport(
            url,
            headers=headers,
            client=self._client,
            retry_delay=self._retry_delay,
            last_event_id=self._last_event_id,
        )

    def _handle_open(self) -> None:
        self._awaiting_first_message = True
        super()._handle_open()

    def _handle_message(self, raw: str | bytes) -> None:
        if self._awaiting_first_message:
            self._awaiting_first_message = False
            if self._backoff is not None:
                self._backoff.record_success()
        super()._handle_message(raw)

    def _handle_event(self, event: SSEEvent) -> None:
        if event.id is not None:
            self._last_event_id = event.id
        if event.event == "message":
            self._handle_message(event.data)
            return

        handlers = self._event_handlers.get(event.event)
        if not handlers:
            logger.debug("No handler for event type: %s", event.event)
            return
        payload = self._decode(event.data)
        for handler in list(handlers):
            self._invoke(handler, payload)

    def _handle_error(self, exc: Exception) -> None:
        self._notify(self._on_error, exc)
        if self._manual_close:
            return
        self._notify(self._on_disconnect, CloseInfo(WS_CLOSE_ABNORMAL, str(exc)))

        result = self._record_failure()
        transport = self._transport
        if result.scheduled:
            self._teardown_transport(WS_CLOSE_NORMAL, "Reconnecting")
        elif transport is None or not transport.retries_natively:
            self._teardown_transport(WS_CLOSE_NORMAL, "Reconnecting")
            self._retry_handle = asyncio.get_running_loop().call_soon(self.connect)
