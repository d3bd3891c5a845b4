# =============================================================================
# livechannel -- Cancellation
# =============================================================================

from __future__ import annotations

import asyncio
from typing import Any, Callable

from ._logging import logger

AbortListener = Callable[[], Any]


class AbortSignal:
    """Cooperative cancellation token shared between a caller and a loop.

    Decode loops poll :attr:`aborted` after every await point; channels
    register a listener that closes them.

    Example::

        signal = AbortSignal.timeout(30.0)
        async for value in iter_stream(response.aiter_bytes(), signal=signal):
            ...
    """

    def __init__(self) -> None:
        self._aborted = False
        self._reason: Any = None
        self._listeners: list[AbortListener] = []
        self._event = asyncio.Event()
        self._timer: asyncio.TimerHandle | None = None

    @classmethod
    def timeout(cls, seconds: float) -> AbortSignal:
        """Return a signal that aborts itself after *seconds*."""
        signal = cls()
        loop = asyncio.get_running_loop()
        signal._timer = loop.call_later(
            seconds, signal.abort, TimeoutError(f"Aborted after {seconds}s")
        )
        return signal

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reason(self) -> Any:
        return self._reason

    def abort(self, reason: Any = None) -> None:
        if self._aborted:
            return
        self._aborted = True
        self._reason = reason
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._event.set()

        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener()
            except Exception as exc:
                logger.error("Abort listener error: %s", exc)

    def add_listener(self, listener: AbortListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: AbortListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def wait(self) -> Any:
        await self._event.wait()
        return self._reason


def is_aborted(signal: AbortSignal | None) -> bool:
    return signal is not None and signal.aborted
