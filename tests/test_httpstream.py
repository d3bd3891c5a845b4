"""Chunked HTTP stream transport, channel and one-shot request helper."""

import asyncio
import json

import httpx
import pytest

from livechannel.cancellation import AbortSignal
from livechannel.config import ReconnectConfig
from livechannel.errors import ChannelUsageError, StreamDecodeError
from livechannel.httpstream import HTTPStreamChannel, HTTPStreamTransport, stream_request
from livechannel.transport import TransportCallbacks

FAST = ReconnectConfig(base_delay=0.01, max_delay=0.01, jitter=0)


async def wait_until(predicate, timeout=2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout=timeout)


def mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def chunked(*parts):
    for part in parts:
        await asyncio.sleep(0)
        yield part


class TestHTTPStreamTransport:
    @pytest.mark.asyncio
    async def test_frames_and_tail_then_normal_close(self):
        def handler(request):
            return httpx.Response(
                200, content=chunked(b'{"a":1}\n{"b"', b":2}\n\n", b"tail")
            )

        events = []
        async with mock_client(handler) as client:
            t = HTTPStreamTransport("https://h/feed", client=client)
            t.callbacks = TransportCallbacks(
                on_open=lambda: events.append("open"),
                on_message=events.append,
                on_close=lambda info: events.append(info.code),
            )
            t.open()
            await t.wait_closed()
        assert events == ["open", '{"a":1}', '{"b":2}', "tail", 1000]

    @pytest.mark.asyncio
    async def test_post_body_and_headers(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, content=b"ok\n")

        async with mock_client(handler) as client:
            t = HTTPStreamTransport(
                "https://h/feed",
                client=client,
                method="POST",
                json={"topic": "a"},
                headers={"Authorization": "Bearer x"},
            )
            t.open()
            await t.wait_closed()
        assert seen[0].method == "POST"
        assert json.loads(seen[0].content) == {"topic": "a"}
        assert seen[0].headers["Authorization"] == "Bearer x"

    @pytest.mark.asyncio
    async def test_http_error_is_abnormal_close(self):
        def handler(request):
            return httpx.Response(500)

        events = []
        async with mock_client(handler) as client:
            t = HTTPStreamTransport("https://h/feed", client=client)
            t.callbacks = TransportCallbacks(
                on_error=lambda exc: events.append("error"),
                on_close=lambda info: events.append(info.code),
            )
            t.open()
            await t.wait_closed()
        assert events == ["error", 1006]

    @pytest.mark.asyncio
    async def test_body_failure_is_abnormal_close(self):
        async def broken_body():
            yield b"1\n"
            raise RuntimeError("body broke")

        def handler(request):
            return httpx.Response(200, content=broken_body())

        events = []
        async with mock_client(handler) as client:
            t = HTTPStreamTransport("https://h/feed", client=client)
            t.callbacks = TransportCallbacks(
                on_message=events.append,
                on_error=lambda exc: events.append("error"),
                on_close=lambda info: events.append(info.code),
            )
            t.open()
            await t.wait_closed()
        assert events == ["1", "error", 1006]
        assert t.closed

    def test_receive_only(self):
        with pytest.raises(ChannelUsageError):
            HTTPStreamTransport("https://h/feed").send("x")


class TestHTTPStreamChannel:
    @pytest.mark.asyncio
    async def test_reconnects_after_body_ends(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, content=f"{len(calls)}\n".encode())

        received = []
        async with mock_client(handler) as client:
            ch = HTTPStreamChannel(
                "https://h/feed", client=client, reconnect=FAST, token="t"
            )
            ch.set_handler(received.append)
            ch.connect()
            await wait_until(lambda: len(received) >= 3)
            await ch.aclose()
        assert received[:3] == [1, 2, 3]
        assert calls[0].url.params["token"] == "t"

    @pytest.mark.asyncio
    async def test_reconnects_after_transport_crash(self):
        calls = []

        async def broken_body():
            yield b"first\n"
            raise RuntimeError("body broke")

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(200, content=broken_body())
            return httpx.Response(200, content=b"second\n")

        received = []
        errors = []
        async with mock_client(handler) as client:
            ch = HTTPStreamChannel(
                "https://h/feed", client=client, reconnect=FAST, on_error=errors.append
            )
            ch.set_handler(received.append)
            ch.connect()
            await wait_until(lambda: "second" in received)
            await ch.aclose()
        assert received[:2] == ["first", "second"]
        assert "body broke" in str(errors[0])

    @pytest.mark.asyncio
    async def test_custom_delimiter(self):
        def handler(request):
            return httpx.Response(200, content=b"a|b|")

        received = []
        async with mock_client(handler) as client:
            ch = HTTPStreamChannel(
                "https://h/feed", client=client, reconnect=FAST, delimiter="|"
            )
            ch.set_handler(received.append)
            ch.connect()
            await wait_until(lambda: len(received) >= 2)
            await ch.aclose()
        assert received[:2] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_send_rejected(self):
        ch = HTTPStreamChannel("https://h/feed")
        with pytest.raises(ChannelUsageError):
            ch.send("x")
        ch.close()


class TestStreamRequest:
    @pytest.mark.asyncio
    async def test_yields_decoded_values(self):
        def handler(request):
            return httpx.Response(200, content=chunked(b'{"n":1}\n{"n', b'":2}\nend'))

        async with mock_client(handler) as client:
            values = [v async for v in stream_request(client, "GET", "https://h/x")]
        assert values == [{"n": 1}, {"n": 2}, "end"]

    @pytest.mark.asyncio
    async def test_transform_and_abort(self):
        def handler(request):
            return httpx.Response(200, content=b"1\n2\n3\n")

        signal = AbortSignal()
        values = []
        async with mock_client(handler) as client:
            async for value in stream_request(
                client, "GET", "https://h/x", transform=lambda v: v + 1, signal=signal
            ):
                values.append(value)
                if value == 3:
                    signal.abort()
        assert values == [2, 3]

    @pytest.mark.asyncio
    async def test_transform_error(self):
        def handler(request):
            return httpx.Response(200, content=b"1\n")

        def explode(value):
            raise ValueError("nope")

        async with mock_client(handler) as client:
            with pytest.raises(StreamDecodeError):
                async for _ in stream_request(
                    client, "GET", "https://h/x", transform=explode
                ):
                    pass

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        def handler(request):
            return httpx.Response(404)

        async with mock_client(handler) as client:
            with pytest.raises(httpx.HTTPStatusError):
                async for _ in stream_request(client, "GET", "https://h/x"):
                    pass
