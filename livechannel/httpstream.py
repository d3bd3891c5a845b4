# =============================================================================
# livechannel -- Chunked HTTP Stream Transport and Channel
# =============================================================================
#
# For endpoints that answer with a long-lived body of delimiter-separated
# frames (NDJSON and similar).  Each response is one connection: when the
# body ends the transport closes normally and the channel opens a new
# request after backoff.
# =============================================================================

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Mapping

import httpx

from ._logging import logger
from .cancellation import AbortSignal
from .channel import PersistentChannel
from .constants import (
    CONNECTION_TIMEOUT,
    DEFAULT_DELIMITER,
    WS_CLOSE_ABNORMAL,
    WS_CLOSE_NORMAL,
)
from .decoder import FrameSplitter, Transform, iter_stream
from .errors import TransportError
from .transport import Transport
from .types import CloseInfo


class HTTPStreamTransport(Transport):
    """Receive-only transport reading one streamed HTTP response.

    Frames are cut from the body with a :class:`FrameSplitter` and handed
    to ``on_message`` as text; an unterminated tail is delivered when the
    body ends.
    """

    def __init__(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        method: str = "GET",
        content: bytes | str | None = None,
        json: Any = None,
        delimiter: str = DEFAULT_DELIMITER,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(url, headers=headers)
        self._method = method
        self._content = content
        self._json = json
        self._delimiter = delimiter
        self._client = client
        self._open = False
        self._closing = False
        self._run_task: asyncio.Task[None] | None = None

    @property
    def is_open(self) -> bool:
        return self._open and not self._closing

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
            info = await self._read_body(client)
            self._open = False
            self._emit_close(info)
        except asyncio.CancelledError:
            logger.debug("HTTP stream task cancelled")
        except Exception as exc:
            self._open = False
            if not self._closing:
                self._emit_crash(exc)
        finally:
            self._open = False
            if self._client is None:
                await client.aclose()
            self._closed = True

    async def _read_body(self, client: httpx.AsyncClient) -> CloseInfo:
        splitter = FrameSplitter(self._delimiter)
        try:
            async with client.stream(
                self._method,
                self.url,
                headers=self.headers,
                content=self._content,
                json=self._json,
            ) as response:
                response.raise_for_status()
                self._open = True
                self._emit_open()
                async for chunk in response.aiter_bytes():
                    for frame in splitter.feed(chunk):
                        if frame.strip():
                            self._emit_message(frame)
        except httpx.HTTPError as exc:
            self._emit_error(TransportError(f"HTTP stream error: {exc}"))
            return CloseInfo(WS_CLOSE_ABNORMAL, str(exc))

        tail = splitter.flush()
        if tail is not None:
            self._emit_message(tail)
        return CloseInfo(WS_CLOSE_NORMAL, "Stream ended")


class HTTPStreamChannel(PersistentChannel):
    """Persistent receive-only channel over a chunked HTTP response.

    Example::

        channel = HTTPStreamChannel(
            "https://api.example.com/feed", method="POST", json={"topic": "a"}
        )
        async with channel:
            async for record in channel:
                ...
    """

    duplex = False

    def __init__(
        self,
        url: Any,
        *,
        method: str = "GET",
        content: bytes | str | None = None,
        json: Any = None,
        client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(url, **kwargs)
        self._method = method
        self._content = content
        self._json = json
        self._client = client

    def _default_transport(self, url: str, headers: Mapping[str, str]) -> Transport:
        return HTTPStreamTransport(
            url,
            headers=headers,
            method=self._method,
            content=self._content,
            json=self._json,
            delimiter=self._config.delimiter,
            client=self._client,
        )


async def stream_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    delimiter: str = DEFAULT_DELIMITER,
    transform: Transform | None = None,
    signal: AbortSignal | None = None,
    **kwargs: Any,
) -> AsyncIterator[Any]:
    """Issue one streaming request and yield its decoded frames.

    Extra keyword arguments go to ``client.stream``.

    Raises:
        httpx.HTTPStatusError: If the response status is an error.
        StreamDecodeError: If *transform* raises.
    """
    async with client.stream(method, url, **kwargs) as response:
        response.raise_for_status()
        async for value in iter_stream(
            response.aiter_bytes(),
            delimiter=delimiter,
            transform=transform,
            signal=signal,
        ):
            yield value
