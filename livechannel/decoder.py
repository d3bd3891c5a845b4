# =============================================================================
# livechannel -- Chunk Stream Decoder
# =============================================================================
#
# Turns a byte stream split at arbitrary points into ordered values:
#
#   bytes --(incremental UTF-8)--> text buffer --(split on delimiter)--> frames
#   frame --(JSON, else trimmed text)--> value --(optional transform)--> emit
#
# The last split element always stays buffered; flush() emits it at EOF.
# =============================================================================

from __future__ import annotations

import codecs
import inspect
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable

from ._logging import logger
from .cancellation import AbortSignal, is_aborted
from .constants import DEFAULT_DELIMITER
from .errors import StreamDecodeError
from .serialization import parse_text

Transform = Callable[[Any], Any | Awaitable[Any]]
DataHandler = Callable[[Any], Any]


def parse_frame(frame: str) -> Any:
    """Decode one complete frame: JSON when it parses, trimmed text otherwise."""
    return parse_text(frame)


class FrameSplitter:
    """Buffer decoded text and cut it into delimiter-terminated frames.

    Multi-byte UTF-8 sequences split across reads are reassembled by a
    stateful incremental decoder. The buffer never holds a complete frame.
    """

    def __init__(
        self,
        delimiter: str = DEFAULT_DELIMITER,
        encoding: str = "utf-8",
    ) -> None:
        if not delimiter:
            raise ValueError("delimiter must be a non-empty string")
        self._delimiter = delimiter
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    @property
    def delimiter(self) -> str:
        return self._delimiter

    @property
    def buffer(self) -> str:
        return self._buffer

    def feed(self, data: bytes | bytearray | memoryview | str) -> list[str]:
        """Append *data* and return every frame it completed, blanks included."""
        if isinstance(data, str):
            text = data
        else:
            text = self._decoder.decode(bytes(data))
        if not text:
            return []

        parts = (self._buffer + text).split(self._delimiter)
        self._buffer = parts.pop()
        return parts

    def flush(self) -> str | None:
        """Return the unterminated tail if it holds anything but whitespace."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        self._decoder.reset()
        return tail if tail.strip() else None


class ChunkStreamDecoder:
    """Incremental decoder from raw chunks to application values.

    Example::

        decoder = ChunkStreamDecoder()
        decoder.feed(b'{"a":1')           # -> []
        decoder.feed(b'}\\n{"b":2}\\n')     # -> [{"a": 1}, {"b": 2}]
        decoder.flush()                   # -> []
    """

    def __init__(self, delimiter: str = DEFAULT_DELIMITER) -> None:
        self._splitter = FrameSplitter(delimiter)

    @property
    def buffer(self) -> str:
        return self._splitter.buffer

    def feed(self, data: bytes | bytearray | memoryview | str) -> list[Any]:
        return [parse_frame(f) for f in self._splitter.feed(data) if f.strip()]

    def flush(self) -> list[Any]:
        tail = self._splitter.flush()
        return [] if tail is None else [parse_frame(tail)]


async def iter_stream(
    source: AsyncIterable[bytes],
    *,
    delimiter: str = DEFAULT_DELIMITER,
    transform: Transform | None = None,
    signal: AbortSignal | None = None,
) -> AsyncIterator[Any]:
    """Yield decoded values from *source* in byte-stream order.

    Each transform is awaited before the next frame is processed. The
    abort *signal* is checked after every await point; once it is set the
    generator stops quietly and the reader is closed.

    Raises:
        StreamDecodeError: If *transform* raises. No further values are
            yielded.
    """
    decoder = ChunkStreamDecoder(delimiter)
    reader = source.__aiter__()
    try:
        while True:
            try:
                chunk = await reader.__anext__()
            except StopAsyncIteration:
                chunk = None
            if is_aborted(signal):
                logger.debug("Stream aborted while reading")
                return
            if chunk is None:
                break

            for value in decoder.feed(chunk):
                if transform is not None:
                    value = await _apply_transform(transform, value)
                    if is_aborted(signal):
                        return
                yield value
                if is_aborted(signal):
                    return

        for value in decoder.flush():
            if is_aborted(signal):
                return
            if transform is not None:
                value = await _apply_transform(transform, value)
                if is_aborted(signal):
                    return
            yield value
    finally:
        await _close_reader(reader)


async def process_stream(
    source: AsyncIterable[bytes],
    on_data: DataHandler,
    *,
    delimiter: str = DEFAULT_DELIMITER,
    transform: Transform | None = None,
    signal: AbortSignal | None = None,
) -> bool:
    """Feed every decoded value of *source* to *on_data*.

    Returns:
        True when the stream was consumed to the end, False when the
        *signal* aborted it.

    Raises:
        StreamDecodeError: If *transform* or *on_data* raises.
    """
    stream = iter_stream(
        source, delimiter=delimiter, transform=transform, signal=signal
    )
    try:
        async for value in stream:
            try:
                result = on_data(value)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                raise StreamDecodeError(f"Stream consumer failed: {exc}") from exc
            if is_aborted(signal):
                return False
    finally:
        await stream.aclose()
    return not is_aborted(signal)


async def _apply_transform(transform: Transform, value: Any) -> Any:
    try:
        result = transform(value)
        if inspect.isawaitable(result):
            result = await result
    except Exception as exc:
        raise StreamDecodeError(f"Stream transform failed: {exc}") from exc
    return result


async def _close_reader(reader: Any) -> None:
    aclose = getattr(reader, "aclose", None)
    if aclose is not None:
        await aclose()
