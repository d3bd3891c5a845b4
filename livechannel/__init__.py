"""livechannel: self-healing realtime channels for asyncio.

WebSocket usage::

    from livechannel import connect

    async with connect("wss://api.example.com/ws", token="your-jwt") as channel:
        channel.send({"type": "subscribe", "topic": "orders"})
        async for message in channel:
            print(message)

Server-sent events::

    channel = connect("https://api.example.com/events")
    channel.set_handler(print)
    channel.connect()

One-shot NDJSON request::

    async with httpx.AsyncClient() as client:
        async for record in stream_request(client, "GET", url):
            ...

Optional extras::

    pip install livechannel[fast]   # orjson
"""

from typing import Any

from ._version import __version__
from .backoff import BackoffController
from .cancellation import AbortSignal
from .channel import PersistentChannel
from .config import ChannelConfig, ReconnectConfig
from .decoder import (
    ChunkStreamDecoder,
    FrameSplitter,
    iter_stream,
    parse_frame,
    process_stream,
)
from .errors import (
    ChannelClosedError,
    ChannelError,
    ChannelUsageError,
    StreamDecodeError,
    TransportClosedError,
    TransportError,
    UnsupportedPayloadError,
)
from .eventstream import EventSourceTransport, EventStreamChannel
from .httpstream import HTTPStreamChannel, HTTPStreamTransport, stream_request
from .sse import SSEEvent, SSEParser
from .transport import Transport, TransportCallbacks
from .types import ChannelState, ChannelStats, CloseInfo, FailureResult
from .websocket import WebSocketChannel, WebSocketTransport

_STREAM_KINDS = {
    "events": EventStreamChannel,
    "http": HTTPStreamChannel,
}


def connect(url: str, *, stream: str = "events", **kwargs: Any) -> PersistentChannel:
    """Create a persistent channel for *url*.

    ``ws://`` and ``wss://`` URLs get a :class:`WebSocketChannel`.  HTTP
    URLs get an :class:`EventStreamChannel`, or an
    :class:`HTTPStreamChannel` with ``stream="http"``.  The channel is not
    connected yet: use it as an async context manager or call
    :meth:`~PersistentChannel.connect`.

    Args:
        url: Endpoint URL.
        stream: ``"events"`` or ``"http"``; ignored for WebSocket URLs.
        **kwargs: Passed to the channel class -- common ones: ``token``,
            ``reconnect``, ``headers``, ``max_queued_messages``,
            ``on_message``.

    Raises:
        ValueError: For an unknown URL scheme or *stream* kind.
    """
    scheme = url.split("://", 1)[0].lower() if "://" in url else ""
    if scheme in ("ws", "wss"):
        return WebSocketChannel(url, **kwargs)
    if scheme not in ("http", "https"):
        raise ValueError(f"Unsupported URL scheme: {url!r}")
    try:
        channel_cls = _STREAM_KINDS[stream]
    except KeyError:
        raise ValueError(f"Unknown stream kind: {stream!r}") from None
    return channel_cls(url, **kwargs)


__all__ = [
    "__version__",
    "connect",
    "PersistentChannel",
    "WebSocketChannel",
    "EventStreamChannel",
    "HTTPStreamChannel",
    "Transport",
    "TransportCallbacks",
    "WebSocketTransport",
    "EventSourceTransport",
    "HTTPStreamTransport",
    "BackoffController",
    "ChunkStreamDecoder",
    "FrameSplitter",
    "iter_stream",
    "process_stream",
    "parse_frame",
    "stream_request",
    "SSEEvent",
    "SSEParser",
    "AbortSignal",
    "ChannelConfig",
    "ReconnectConfig",
    "ChannelState",
    "ChannelStats",
    "CloseInfo",
    "FailureResult",
    "ChannelError",
    "TransportError",
    "TransportClosedError",
    "ChannelClosedError",
    "ChannelUsageError",
    "UnsupportedPayloadError",
    "StreamDecodeError",
]
