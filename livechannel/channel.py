# =============================================================================
# livechannel -- Persistent Channel
# =============================================================================
#
# Owns one transport and one backoff controller and keeps a stable API
# across reconnects:
#
#   IDLE --connect()--> CONNECTING --open--> OPEN
#   OPEN --transport lost--> RECONNECTING --timer--> CONNECTING
#   any --close()--> CLOSING --> CLOSED (terminal)
#
# Outbound sends wait in a FIFO until the transport is open; inbound
# messages wait in a pending buffer until a handler is attached.
# =============================================================================

from __future__ import annotations

import asyncio
import random
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Callable, Mapping

from ._logging import logger
from .backoff import BackoffController
from .cancellation import AbortSignal, is_aborted
from .config import ChannelConfig, HeaderProvider, ReconnectConfig
from .constants import DEFAULT_DELIMITER, WS_CLOSE_NORMAL
from .errors import ChannelClosedError, ChannelUsageError, TransportClosedError
from .outbound_queue import OutboundQueue
from .serialization import decode_payload, encode_payload
from .sse import SSEEvent
from .transport import Transport, TransportCallbacks
from .types import ChannelState, ChannelStats, CloseInfo, FailureResult

MessageHandler = Callable[[Any], Any]
TransportFactory = Callable[[str, Mapping[str, str]], Transport]

# Config fields that can change between connects without rebuilding queues
# or the backoff controller.
_RECONFIGURABLE = frozenset(
    {"url", "token", "token_param", "query", "headers", "header_provider"}
)

_CLOSED = object()


class PersistentChannel(ABC):
    """Self-healing connection with queued sends and buffered receives.

    Subclasses pick the transport (:meth:`_default_transport`) and may
    override the failure hooks.  All methods must be called from the
    event loop that runs the channel.

    Args:
        url: Endpoint URL, or a complete :class:`ChannelConfig` (the other
            config keywords are then ignored).
        token: Auth token, appended as a query param on every connect.
        query: Extra query params.
        headers: Static headers for transports that can carry them.
        header_provider: Called before every connect for fresh headers.
        reconnect: Backoff configuration (default: the variant's).
        max_queued_messages: Outbound queue cap.
        max_messages: Size of the received-message history.
        delimiter: Frame separator for delimiter-framed streams.
        signal: Aborting it closes the channel.
        transport_factory: ``(url, headers) -> Transport`` override.
        rng: Jitter source for the backoff controller.
        on_connect: ``()`` after every successful open.
        on_disconnect: ``(CloseInfo)`` on every loss and on close.
        on_error: ``(Exception)`` for transport errors and abnormal closes.
        on_message: ``(payload)`` for every inbound message.
        on_state_change: ``(ChannelState)`` on every transition.

    Callbacks and handlers may be plain functions or coroutine functions.
    Exceptions they raise are logged, not propagated.
    """

    duplex: bool = True
    default_reconnect: ReconnectConfig = ReconnectConfig()

    def __init__(
        self,
        url: str | ChannelConfig,
        *,
        token: str | None = None,
        query: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        header_provider: HeaderProvider | None = None,
        reconnect: ReconnectConfig | None = None,
        max_queued_messages: int | None = None,
        max_messages: int | None = None,
        delimiter: str = DEFAULT_DELIMITER,
        signal: AbortSignal | None = None,
        transport_factory: TransportFactory | None = None,
        rng: random.Random | None = None,
        on_connect: Callable[[], Any] | None = None,
        on_disconnect: Callable[[CloseInfo], Any] | None = None,
        on_error: Callable[[Exception], Any] | None = None,
        on_message: MessageHandler | None = None,
        on_state_change: Callable[[ChannelState], Any] | None = None,
    ) -> None:
        if isinstance(url, ChannelConfig):
            self._config = url
        else:
            self._config = ChannelConfig(
                url=url,
                token=token,
                query=dict(query or {}),
                headers=dict(headers or {}),
                header_provider=header_provider,
                reconnect=reconnect,
                max_queued_messages=max_queued_messages,
                max_messages=max_messages,
                delimiter=delimiter,
            )
        self._signal = signal
        self._transport_factory = transport_factory
        self._rng = rng

        # Callbacks
        self._on_connect = on_connect
        self._on_disconnect = on_disconnect
        self._on_error = on_error
        self._on_message = on_message
        self._on_state_change = on_state_change

        # State
        self._state = ChannelState.IDLE
        self._manual_close = False
        self._transport: Transport | None = None
        self._closing_transports: list[Transport] = []
        self._backoff: BackoffController | None = None
        self._last_failure: FailureResult | None = None
        self._retry_handle: asyncio.Handle | None = None
        self._open_waiters: list[asyncio.Future[None]] = []

        # Queues
        self._outbound = OutboundQueue(max_size=self._config.max_queued_messages)
        self._pending: deque[Any] = deque()
        self._handler: MessageHandler | None = None
        self._history: deque[Any] = deque(maxlen=self._config.max_messages)
        self._last_message: Any = None
        self._iter_queue: asyncio.Queue[Any] | None = None

        self._stats = ChannelStats()
        self._background_tasks: set[asyncio.Task[Any]] = set()

        if signal is not None:
            signal.add_listener(self.close)

    # -- Context manager ------------------------------------------------------

    async def __aenter__(self) -> PersistentChannel:
        self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    # -- Async iterator -------------------------------------------------------

    def __aiter__(self) -> PersistentChannel:
        self._ensure_iter_queue()
        return self

    async def __anext__(self) -> Any:
        queue = self._ensure_iter_queue()
        item = await queue.get()
        if item is _CLOSED:
            # Re-queue so other consumers also see the close
            queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    def _ensure_iter_queue(self) -> asyncio.Queue[Any]:
        queue = self._iter_queue
        if queue is None:
            queue = self._iter_queue = asyncio.Queue()
            if self._manual_close:
                queue.put_nowait(_CLOSED)
            else:
                self.set_handler(queue.put_nowait)
        return queue

    # -- Properties -----------------------------------------------------------

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def config(self) -> ChannelConfig:
        return self._config

    @property
    def url(self) -> str:
        return self._config.url

    @property
    def is_connected(self) -> bool:
        return self._transport is not None and self._transport.is_open

    @property
    def attempts(self) -> int:
        """Consecutive failed connections since the last success."""
        return self._backoff.attempts if self._backoff is not None else 0

    @property
    def last_failure(self) -> FailureResult | None:
        return self._last_failure

    @property
    def stats(self) -> ChannelStats:
        return self._stats

    @property
    def last_message(self) -> Any:
        return self._last_message

    @property
    def messages(self) -> tuple[Any, ...]:
        return tuple(self._history)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def queued_count(self) -> int:
        return self._outbound.size

    # -- Lifecycle ------------------------------------------------------------

    def connect(self) -> None:
        """Open the transport. No-op once closed or while a transport exists."""
        if self._manual_close:
            return
        if is_aborted(self._signal):
            self.close()
            return
        if self._transport is not None:
            return
        self._cancel_retry()

        if self._backoff is None:
            self._backoff = BackoffController(
                self.connect,
                config=self._config.reconnect or self.default_reconnect,
                enabled=lambda: not self._manual_close,
                rng=self._rng,
            )
        else:
            self._backoff.cancel()

        transport = self._create_transport(
            self._config.build_url(), self._config.build_headers()
        )
        transport.callbacks = TransportCallbacks(
            on_open=self._handle_open,
            on_error=self._handle_error,
            on_close=self._handle_close,
            on_message=self._handle_message,
            on_event=self._handle_event,
        )
        self._transport = transport
        self._set_state(ChannelState.CONNECTING)
        logger.debug("Connecting to %s", self._config.url)
        transport.open()

    def close(self) -> None:
        """Close for good: no reconnects, queues dropped, handler cleared."""
        if self._state in (ChannelState.CLOSING, ChannelState.CLOSED):
            return
        self._manual_close = True
        self._set_state(ChannelState.CLOSING)

        if self._backoff is not None:
            self._backoff.dispose()
        self._cancel_retry()
        self._teardown_transport(WS_CLOSE_NORMAL, "Client closed")

        self._handler = None
        self._pending.clear()
        self._outbound.clear()
        self._stats.connected_since = None
        if self._signal is not None:
            self._signal.remove_listener(self.close)
        self._resolve_open_waiters(ChannelClosedError("Channel closed"))

        self._set_state(ChannelState.CLOSED)
        self._notify(self._on_disconnect, CloseInfo(WS_CLOSE_NORMAL, "Client closed"))
        if self._iter_queue is not None:
            self._iter_queue.put_nowait(_CLOSED)

    def dispose(self) -> None:
        """Alias for :meth:`close`."""
        self.close()

    async def aclose(self) -> None:
        """Close and wait for the transport to finish shutting down."""
        self.close()
        transports, self._closing_transports = self._closing_transports, []
        await asyncio.gather(
            *(t.wait_closed() for t in transports), return_exceptions=True
        )

    async def wait_open(self, timeout: float | None = None) -> None:
        """Wait until the transport reports itself open.

        Raises:
            ChannelClosedError: If the channel is or becomes closed.
            asyncio.TimeoutError: If *timeout* expires.
        """
        if self._manual_close:
            raise ChannelClosedError("Channel closed")
        if self.is_connected:
            return
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._open_waiters.append(waiter)
        try:
            await asyncio.wait_for(waiter, timeout=timeout)
        finally:
            if waiter in self._open_waiters:
                self._open_waiters.remove(waiter)

    def reconfigure(self, **changes: Any) -> None:
        """Update connection settings; they apply on the next connect.

        Only ``url``, ``token``, ``token_param``, ``query``, ``headers`` and
        ``header_provider`` can change on an existing channel.
        """
        unknown = set(changes) - _RECONFIGURABLE
        if unknown:
            raise ChannelUsageError(
                f"Cannot reconfigure {', '.join(sorted(unknown))} on a live channel"
            )
        self._config = self._config.with_changes(**changes)

    # -- Send / Receive -------------------------------------------------------

    def send(self, data: Any) -> bool:
        """Send *data* now if open, otherwise queue it for the next open.

        Returns:
            True if sent or queued, False if dropped (channel closed or
            outbound queue full).

        Raises:
            UnsupportedPayloadError: If *data* cannot be serialized.
            ChannelUsageError: If the channel is receive-only.
        """
        if not self.duplex:
            raise ChannelUsageError(f"{type(self).__name__} is receive-only")
        payload = encode_payload(data)

        if self._manual_close:
            logger.debug("Channel closed, dropping message")
            self._stats.messages_dropped += 1
            return False

        transport = self._transport
        if transport is not None and transport.is_open:
            if self._outbound.size:
                self._flush_outbound()
            transport.send(payload)
            self._stats.messages_sent += 1
            return True

        if self._outbound.enqueue(payload):
            self._stats.messages_queued += 1
            return True
        self._stats.messages_dropped += 1
        return False

    def set_handler(self, handler: MessageHandler | None) -> None:
        """Attach *handler* and replay buffered messages through it in order.

        Passing None detaches the handler; later messages are buffered.
        """
        self._handler = handler
        if handler is None:
            return
        pending, self._pending = self._pending, deque()
        for payload in pending:
            self._invoke(handler, payload)

    def clear_messages(self) -> None:
        """Forget the message history and the last message."""
        self._history.clear()
        self._last_message = None

    # -- Stats ----------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "url": self._config.url,
            "is_connected": self.is_connected,
            "attempts": self.attempts,
            "messages_received": self._stats.messages_received,
            "messages_sent": self._stats.messages_sent,
            "messages_queued": self._stats.messages_queued,
            "messages_dropped": self._stats.messages_dropped,
            "reconnect_count": self._stats.reconnect_count,
            "connected_since": self._stats.connected_since,
            "pending_inbound": len(self._pending),
            "outbound_queue": self._outbound.get_stats(),
            "history_size": len(self._history),
        }

    # -- Transport hooks ------------------------------------------------------

    def _handle_open(self) -> None:
        if self._backoff is not None:
            self._backoff.record_success()
        self._stats.connected_since = time.monotonic()
        self._set_state(ChannelState.OPEN)
        self._flush_outbound()
        self._resolve_open_waiters()
        self._notify(self._on_connect)

    def _handle_error(self, exc: Exception) -> None:
        self._notify(self._on_error, exc)

    def _handle_close(self, info: CloseInfo) -> None:
        self._transport = None
        self._stats.connected_since = None
        logger.debug("Transport closed: code=%d reason=%s", info.code, info.reason)
        self._notify(self._on_disconnect, info)

        if self._manual_close:
            self._outbound.clear()
            return

        if not info.is_normal:
            self._notify(self._on_error, TransportClosedError(info.code, info.reason))
        self._schedule_reconnect()

    def _handle_message(self, raw: str | bytes) -> None:
        payload = self._decode(raw)
        self._stats.messages_received += 1
        self._last_message = payload
        self._history.append(payload)

        if self._handler is not None:
            self._invoke(self._handler, payload)
        else:
            self._pending.append(payload)
        self._notify(self._on_message, payload)

    def _handle_event(self, event: SSEEvent) -> None:
        """Named events; only event streams produce them."""

    # -- Internal: reconnection -----------------------------------------------

    def _record_failure(self) -> FailureResult:
        self._set_state(ChannelState.RECONNECTING)
        self._stats.reconnect_count += 1
        if self._backoff is None:
            # No connect() yet; nothing to back off from
            result = FailureResult(scheduled=False)
            self._last_failure = result
            return result
        result = self._backoff.record_failure()
        self._last_failure = result
        if result.scheduled:
            logger.info(
                "Reconnecting in %.2fs (attempt %d)",
                result.delay,
                self._backoff.attempts,
            )
        return result

    def _schedule_reconnect(self) -> None:
        if self._manual_close:
            return
        result = self._record_failure()
        if not result.scheduled and self._transport is None:
            # Inside the grace threshold: retry without backing off.
            self._retry_handle = asyncio.get_running_loop().call_soon(self.connect)

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def _teardown_transport(self, code: int, reason: str) -> None:
        """Detach callbacks first so the closing transport stays silent."""
        transport, self._transport = self._transport, None
        if transport is None:
            return
        transport.detach()
        transport.close(code, reason)
        self._closing_transports = [
            t for t in self._closing_transports if not t.closed
        ]
        self._closing_transports.append(transport)

    # -- Internal: helpers ----------------------------------------------------

    @abstractmethod
    def _default_transport(self, url: str, headers: Mapping[str, str]) -> Transport:
        """Build the transport this channel variant speaks."""

    def _create_transport(self, url: str, headers: Mapping[str, str]) -> Transport:
        if self._transport_factory is not None:
            return self._transport_factory(url, headers)
        return self._default_transport(url, headers)

    def _decode(self, raw: str | bytes) -> Any:
        return decode_payload(raw)

    def _flush_outbound(self) -> None:
        transport = self._transport
        queued = self._outbound.drain()
        if not queued:
            return
        logger.debug("Flushing %d queued messages", len(queued))
        for i, payload in enumerate(queued):
            if transport is None or not transport.is_open:
                remaining = queued[i:]
                logger.warning(
                    "Outbound flush interrupted, re-queuing %d messages",
                    len(remaining),
                )
                for item in remaining:
                    self._outbound.enqueue(item)
                return
            transport.send(payload)
            self._stats.messages_sent += 1

    def _resolve_open_waiters(self, exc: Exception | None = None) -> None:
        waiters, self._open_waiters = self._open_waiters, []
        for waiter in waiters:
            if waiter.done():
                continue
            if exc is None:
                waiter.set_result(None)
            else:
                waiter.set_exception(exc)

    def _notify(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is not None:
            self._invoke(callback, *args)

    def _invoke(self, fn: Callable[..., Any], *args: Any) -> None:
        try:
            result = fn(*args)
            if asyncio.iscoroutine(result):
                self._fire_task(result)
        except Exception as exc:
            logger.error("Callback %r failed: %s", fn, exc)

    def _fire_task(self, coro: Any) -> None:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._background_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Async callback failed: %s", task.exception())

    def _set_state(self, new_state: ChannelState) -> None:
        if new_state == self._state:
            return
        old = self._state
        self._state = new_state
        logger.debug("State: %s -> %s", old.value, new_state.value)
        self._notify(self._on_state_change, new_state)
