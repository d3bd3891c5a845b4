"""Shared fixtures: an in-memory transport the tests drive by hand."""

import pytest

from livechannel.constants import WS_CLOSE_ABNORMAL
from livechannel.errors import TransportError
from livechannel.sse import SSEEvent
from livechannel.transport import Transport
from livechannel.types import CloseInfo


class FakeTransport(Transport):
    """Transport with no I/O. Tests call ``simulate_*`` to fire events."""

    def __init__(self, url, *, headers=None, retries_natively=False):
        super().__init__(url, headers=headers)
        self.retries_natively = retries_natively
        self.sent = []
        self.opened = False
        self.close_calls = []
        self._open = False

    @property
    def is_open(self):
        return self._open and not self._closed

    def open(self):
        self.opened = True

    def close(self, code=1000, reason=""):
        self.close_calls.append((code, reason))
        self._open = False
        self._closed = True
        self._emit_close(CloseInfo(code, reason))

    def send(self, payload):
        if not self.is_open:
            raise TransportError("not open")
        self.sent.append(payload)

    # -- Test drivers ---------------------------------------------------------

    def simulate_open(self):
        self._open = True
        self._emit_open()

    def simulate_message(self, data):
        self._emit_message(data)

    def simulate_event(self, data, event="message", id=None):
        self._emit_event(SSEEvent(data=data, event=event, id=id))

    def simulate_error(self, exc=None):
        self._emit_error(exc or TransportError("boom"))

    def simulate_close(self, code=WS_CLOSE_ABNORMAL, reason=""):
        self._open = False
        self._closed = True
        self._emit_close(CloseInfo(code, reason))


class TransportRecorder:
    """``transport_factory`` that keeps every transport it builds."""

    def __init__(self, retries_natively=False):
        self.retries_natively = retries_natively
        self.created = []

    def __call__(self, url, headers):
        transport = FakeTransport(
            url, headers=headers, retries_natively=self.retries_natively
        )
        self.created.append(transport)
        return transport

    @property
    def last(self):
        return self.created[-1]


@pytest.fixture
def transports():
    return TransportRecorder()


@pytest.fixture
def native_transports():
    return TransportRecorder(retries_natively=True)
