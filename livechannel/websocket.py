# =============================================================================
# livechannel -- WebSocket Transport and Channel
# =============================================================================

from __future__ import annotations

import asyncio
from typing import Any, Mapping, Sequence

import websockets.asyncio.client
from websockets.exceptions import ConnectionClosed

from ._logging import logger
from .channel import PersistentChannel
from .config import ReconnectConfig
from .constants import (
    CONNECTION_TIMEOUT,
    MAX_MESSAGE_SIZE,
    WS_CLOSE_ABNORMAL,
    WS_CLOSE_NORMAL,
    WS_RECONNECT_JITTER,
    WS_RECONNECT_THRESHOLD,
)
from .errors import TransportError
from .serialization import Payload
from .transport import Transport
from .types import CloseInfo


class WebSocketTransport(Transport):
    """Full-duplex transport over one ``websockets`` client connection.

    Sends go through an internal queue drained by a writer task, so
    :meth:`send` never blocks and preserves call order.
    """

    def __init__(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        open_timeout: float = CONNECTION_TIMEOUT,
        max_size: int | None = MAX_MESSAGE_SIZE,
        subprotocols: Sequence[str] | None = None,
    ) -> None:
        super().__init__(url, headers=headers)
        self._open_timeout = open_timeout
        self._max_size = max_size
        self._subprotocols = subprotocols

        self._ws: websockets.asyncio.client.ClientConnection | None = None
        self._ws_cm: websockets.asyncio.client.connect | None = None
        self._outbox: asyncio.Queue[Payload] = asyncio.Queue()
        self._run_task: asyncio.Task[None] | None = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closing

    # -- Lifecycle ------------------------------------------------------------

    def open(self) -> None:
        if self._run_task is not None:
            return
        self._run_task = self._fire_task(self._run())

    def close(self, code: int = WS_CLOSE_NORMAL, reason: str = "") -> None:
        if self._closing:
            return
        self._closing = True
        if self._ws is not None:
            self._fire_task(self._ws.close(code, reason))
        elif self._run_task is not None:
            # Still handshaking
            self._run_task.cancel()
        else:
            self._closed = True

    def send(self, payload: Payload) -> None:
        if not self.is_open:
            raise TransportError("WebSocket is not open")
        if isinstance(payload, (bytearray, memoryview)):
            payload = bytes(payload)
        self._outbox.put_nowait(payload)

    # -- Internal -------------------------------------------------------------

    async def _run(self) -> None:
        try:
            ws = await self._connect()
            if ws is None:
                return
            self._emit_open()
            writer = self._fire_task(self._write_loop(ws))
            try:
                await self._recv_loop(ws)
            finally:
                writer.cancel()
                self._ws = None
                await self._release()
            self._emit_close(_close_info(ws))
        except asyncio.CancelledError:
            logger.debug("WebSocket task cancelled")
        except Exception as exc:
            self._ws = None
            await self._release()
            if not self._closing:
                self._emit_crash(exc)
        finally:
            self._closed = True

    async def _connect(self) -> websockets.asyncio.client.ClientConnection | None:
        self._ws_cm = websockets.asyncio.client.connect(
            self.url,
            additional_headers=self.headers or None,
            subprotocols=self._subprotocols,
            max_size=self._max_size,
            open_timeout=None,  # asyncio.wait_for handles timeout
        )
        try:
            ws = await asyncio.wait_for(
                self._ws_cm.__aenter__(), timeout=self._open_timeout
            )
        except asyncio.TimeoutError:
            self._ws_cm = None
            self._fail(f"Connection timed out after {self._open_timeout}s")
            return None
        except Exception as exc:
            self._ws_cm = None
            self._fail(f"Failed to connect: {exc}")
            return None

        self._ws = ws
        if self._closing:
            # close() arrived during the handshake
            self._ws = None
            await self._release()
            return None
        logger.debug("WebSocket connected to %s", self.url)
        return ws

    def _fail(self, message: str) -> None:
        if self._closing:
            return
        self._emit_error(TransportError(message))
        self._emit_close(CloseInfo(WS_CLOSE_ABNORMAL, message))

    async def _recv_loop(self, ws: websockets.asyncio.client.ClientConnection) -> None:
        try:
            async for message in ws:
                self._emit_message(message)
        except ConnectionClosed as exc:
            logger.debug("WebSocket closed: %s", exc)

    async def _write_loop(self, ws: websockets.asyncio.client.ClientConnection) -> None:
        while True:
            payload = await self._outbox.get()
            try:
                await ws.send(payload)
            except ConnectionClosed:
                logger.debug("Send failed: connection closed")
                return

    async def _release(self) -> None:
        cm, self._ws_cm = self._ws_cm, None
        if cm is None:
            return
        try:
            await cm.__aexit__(None, None, None)
        except (OSError, ConnectionClosed) as exc:
            logger.debug("WebSocket cleanup error: %s", exc)


def _close_info(ws: Any) -> CloseInfo:
    code = ws.close_code
    if code is None:
        return CloseInfo(WS_CLOSE_ABNORMAL, "")
    return CloseInfo(code, ws.close_reason or "")


class WebSocketChannel(PersistentChannel):
    """Persistent full-duplex WebSocket channel.

    Reconnects on the first failure with jittered exponential backoff.

    Example::

        async with WebSocketChannel("wss://api.example.com/ws", token=tok) as ch:
            ch.send({"type": "subscribe", "topic": "orders"})
            async for message in ch:
                print(message)
    """

    duplex = True
    default_reconnect = ReconnectConfig(
        threshold=WS_RECONNECT_THRESHOLD, jitter=WS_RECONNECT_JITTER
    )

    def __init__(
        self,
        url: Any,
        *,
        open_timeout: float = CONNECTION_TIMEOUT,
        max_size: int | None = MAX_MESSAGE_SIZE,
        subprotocols: Sequence[str] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(url, **kwargs)
        self._open_timeout = open_timeout
        self._max_size = max_size
        self._subprotocols = subprotocols

    def _default_transport(self, url: str, headers: Mapping[str, str]) -> Transport:
        return WebSocketTransport(
            url,
            headers=headers,
            open_timeout=self._open_timeout,
            max_size=self._max_size,
            subprotocols=self._subprotocols,
        )
