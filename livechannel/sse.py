# =============================================================================
# livechannel -- Server-Sent Events Parser
# =============================================================================
#
# text/event-stream framing:
#   field:value lines, ":" comments, blank line dispatches the event.
#   data lines accumulate (joined by "\n"), event defaults to "message",
#   id persists across events, retry is an integer in milliseconds and
#   takes effect as soon as it is read.
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass

from .decoder import FrameSplitter


@dataclass(frozen=True, slots=True)
class SSEEvent:
    """One dispatched server-sent event."""

    data: str
    event: str = "message"
    id: str | None = None


class SSEParser:
    """Incremental ``text/event-stream`` parser.

    Attributes:
        retry: Last reconnection time sent by the server, in milliseconds.
    """

    def __init__(self, last_event_id: str | None = None) -> None:
        self._lines = FrameSplitter("\n")
        self._data: list[str] = []
        self._event = ""
        self._last_event_id = last_event_id
        self._at_start = True
        self.retry: int | None = None

    @property
    def last_event_id(self) -> str | None:
        return self._last_event_id

    def feed(self, chunk: bytes | str) -> list[SSEEvent]:
        events: list[SSEEvent] = []
        for line in self._lines.feed(chunk):
            if self._at_start:
                # A byte order mark may only lead the stream
                self._at_start = False
                line = line.removeprefix("\ufeff")
            event = self._process_line(line.removesuffix("\r"))
            if event is not None:
                events.append(event)
        return events

    def _process_line(self, line: str) -> SSEEvent | None:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            if "\0" not in value:
                self._last_event_id = value
        elif name == "retry":
            if value.isdigit():
                self.retry = int(value)
        return None

    def _dispatch(self) -> SSEEvent | None:
        data, self._data = self._data, []
        event_type, self._event = self._event, ""
        if not data:
            return None
        return SSEEvent(
            data="\n".join(data),
            event=event_type or "message",
            id=self._last_event_id,
        )
