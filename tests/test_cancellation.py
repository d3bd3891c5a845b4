"""Tests for AbortSignal."""

import asyncio
from unittest.mock import MagicMock

import pytest

from livechannel.cancellation import AbortSignal, is_aborted


class TestAbortSignal:
    @pytest.mark.asyncio
    async def test_abort_notifies_listeners_once(self):
        signal = AbortSignal()
        listener = MagicMock()
        signal.add_listener(listener)
        signal.abort("stop")
        signal.abort("again")
        listener.assert_called_once_with()
        assert signal.aborted
        assert signal.reason == "stop"

    @pytest.mark.asyncio
    async def test_removed_listener_not_called(self):
        signal = AbortSignal()
        listener = MagicMock()
        signal.add_listener(listener)
        signal.remove_listener(listener)
        signal.abort()
        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_listener_error_does_not_stop_others(self):
        signal = AbortSignal()
        second = MagicMock()
        signal.add_listener(MagicMock(side_effect=RuntimeError("boom")))
        signal.add_listener(second)
        signal.abort()
        second.assert_called_once()

    @pytest.mark.asyncio
    async def test_wait_returns_reason(self):
        signal = AbortSignal()
        asyncio.get_running_loop().call_soon(signal.abort, "done")
        assert await asyncio.wait_for(signal.wait(), timeout=1.0) == "done"

    @pytest.mark.asyncio
    async def test_timeout(self):
        signal = AbortSignal.timeout(0.01)
        reason = await asyncio.wait_for(signal.wait(), timeout=1.0)
        assert isinstance(reason, TimeoutError)

    def test_is_aborted_handles_none(self):
        assert is_aborted(None) is False
