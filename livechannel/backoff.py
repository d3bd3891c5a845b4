# =============================================================================
# livechannel -- Backoff Controller
# =============================================================================
#
# Failure bookkeeping and reconnect scheduling.  No I/O: the controller only
# counts failures, computes jittered exponential delays and owns at most one
# pending loop timer.
# =============================================================================

from __future__ import annotations

import asyncio
import random
from typing import Any, Callable

from ._logging import logger
from .config import ReconnectConfig
from .types import FailureResult


class BackoffController:
    """Decide whether and after how long to retry a lost connection.

    The n-th consecutive failure (counting from 0) waits
    ``base_delay * factor ** (n - threshold)``, capped
    at ``max_delay``, plus a uniform random jitter in ``[0, jitter]``.
    The first *threshold* failures are absorbed without scheduling.

    Args:
        on_reconnect: Called when a scheduled delay elapses. A returned
            coroutine is run as a task.
        config: Backoff parameters (defaults: :class:`ReconnectConfig`).
        enabled: Checked on every failure and again when the timer fires;
            returning False suppresses scheduling.
        rng: Source of jitter, for deterministic tests.
    """

    def __init__(
        self,
        on_reconnect: Callable[[], Any],
        *,
        config: ReconnectConfig | None = None,
        enabled: Callable[[], bool] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._on_reconnect = on_reconnect
        self._config = config or ReconnectConfig()
        self._enabled = enabled
        self._rng = rng or random.Random()

        self._attempts = 0
        self._timer: asyncio.TimerHandle | None = None
        self._disposed = False
        self._background_tasks: set[asyncio.Task[Any]] = set()

    # -- Properties -----------------------------------------------------------

    @property
    def config(self) -> ReconnectConfig:
        return self._config

    @property
    def attempts(self) -> int:
        """Consecutive failures since the last success."""
        return self._attempts

    @property
    def pending(self) -> bool:
        """Whether a reconnect timer is outstanding."""
        return self._timer is not None

    # -- Bookkeeping ----------------------------------------------------------

    def compute_delay(self, attempt_after_threshold: int) -> float:
        cfg = self._config
        backoff = min(
            cfg.base_delay * (cfg.factor ** max(0, attempt_after_threshold)),
            cfg.max_delay,
        )
        jitter = self._rng.uniform(0.0, cfg.jitter) if cfg.jitter > 0 else 0.0
        return backoff + jitter

    def record_failure(self) -> FailureResult:
        # Failures seen before this one, past the threshold
        after = self._attempts - self._config.threshold
        self._attempts += 1
        if self._disposed or not self._is_enabled():
            return FailureResult(scheduled=False)

        if after < 0:
            logger.debug(
                "Failure %d absorbed (threshold %d)",
                self._attempts,
                self._config.threshold,
            )
            return FailureResult(scheduled=False)

        delay = self.compute_delay(after)
        self.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._fire)
        return FailureResult(scheduled=True, delay=delay)

    def record_success(self) -> None:
        self.reset()

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def reset(self) -> None:
        self._attempts = 0
        self.cancel()

    def dispose(self) -> None:
        """Cancel any pending timer and refuse to schedule again."""
        self._disposed = True
        self.cancel()

    # -- Internal -------------------------------------------------------------

    def _is_enabled(self) -> bool:
        return self._enabled is None or bool(self._enabled())

    def _fire(self) -> None:
        self._timer = None
        if self._disposed or not self._is_enabled():
            return
        result = self._on_reconnect()
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)
