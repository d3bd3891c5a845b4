"""Tests for BackoffController."""

import asyncio
import random
from unittest.mock import MagicMock

import pytest

from livechannel.backoff import BackoffController
from livechannel.config import ReconnectConfig


def _controller(callback=None, **config):
    cfg = ReconnectConfig(**config)
    return BackoffController(callback or MagicMock(), config=cfg, rng=random.Random(7))


class TestComputeDelay:
    def test_first_delay_is_base(self):
        c = _controller(jitter=0)
        assert c.compute_delay(0) == 0.5

    def test_exponential_growth(self):
        c = _controller(base_delay=1.0, factor=2.0, max_delay=100.0, jitter=0)
        assert [c.compute_delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max(self):
        c = _controller(base_delay=1.0, factor=10.0, max_delay=5.0, jitter=0)
        assert c.compute_delay(3) == 5.0

    def test_jitter_bounds(self):
        c = _controller(base_delay=1.0, max_delay=4.0, jitter=0.5)
        for n in range(10):
            delay = c.compute_delay(n)
            assert min(2.0**n, 4.0) <= delay <= min(2.0**n, 4.0) + 0.5

    def test_monotonic_up_to_max(self):
        c = _controller(base_delay=0.5, factor=2.0, max_delay=30.0, jitter=0)
        delays = [c.compute_delay(n) for n in range(12)]
        assert delays == sorted(delays)
        assert max(delays) == 30.0


class TestRecordFailure:
    @pytest.mark.asyncio
    async def test_schedules_at_threshold_zero(self):
        c = _controller(jitter=0)
        result = c.record_failure()
        assert result.scheduled is True
        assert result.delay == 0.5
        assert c.pending is True
        assert c.attempts == 1
        c.dispose()

    @pytest.mark.asyncio
    async def test_below_threshold_is_silent(self):
        c = _controller(threshold=3, jitter=0)
        results = [c.record_failure() for _ in range(3)]
        assert all(not r.scheduled for r in results)
        assert all(r.delay is None for r in results)
        assert c.pending is False
        assert c.attempts == 3

        result = c.record_failure()
        assert result.scheduled is True
        assert result.delay == 0.5  # base * factor ** 0
        c.dispose()

    @pytest.mark.asyncio
    async def test_delays_grow_per_failure(self):
        c = _controller(jitter=0)
        delays = [c.record_failure().delay for _ in range(4)]
        assert delays == [0.5, 1.0, 2.0, 4.0]
        c.dispose()

    @pytest.mark.asyncio
    async def test_single_pending_timer(self):
        c = _controller(jitter=0)
        c.record_failure()
        first = c._timer
        c.record_failure()
        assert first.cancelled()
        assert c._timer is not first
        c.dispose()

    @pytest.mark.asyncio
    async def test_disabled_does_not_schedule(self):
        c = BackoffController(MagicMock(), enabled=lambda: False)
        result = c.record_failure()
        assert result.scheduled is False
        assert c.pending is False

    def test_record_failure_counts_without_loop_when_absorbed(self):
        c = _controller(threshold=2)
        assert c.record_failure().scheduled is False
        assert c.attempts == 1


class TestRecordSuccess:
    @pytest.mark.asyncio
    async def test_resets_attempts_and_timer(self):
        c = _controller(jitter=0)
        c.record_failure()
        c.record_failure()
        timer = c._timer
        c.record_success()
        assert c.attempts == 0
        assert c.pending is False
        assert timer.cancelled()

    @pytest.mark.asyncio
    async def test_reset_reproduces_fresh_delays(self):
        fresh = _controller(threshold=1, jitter=0)
        fresh_delays = [fresh.record_failure().delay for _ in range(4)]
        fresh.dispose()

        c = _controller(threshold=1, jitter=0)
        for _ in range(6):
            c.record_failure()
        c.record_success()
        assert [c.record_failure().delay for _ in range(4)] == fresh_delays
        c.dispose()


class TestDispose:
    @pytest.mark.asyncio
    async def test_dispose_cancels_and_blocks_scheduling(self):
        c = _controller()
        c.record_failure()
        c.dispose()
        assert c.pending is False
        assert c.record_failure().scheduled is False
        assert c.pending is False

    def test_dispose_idempotent(self):
        c = _controller()
        c.dispose()
        c.dispose()


class TestTimer:
    @pytest.mark.asyncio
    async def test_fires_callback(self):
        fired = asyncio.Event()
        c = _controller(fired.set, base_delay=0.01, max_delay=0.01, jitter=0)
        c.record_failure()
        await asyncio.wait_for(fired.wait(), timeout=1.0)
        assert c.pending is False

    @pytest.mark.asyncio
    async def test_rechecks_enabled_when_firing(self):
        enabled = True
        callback = MagicMock()
        c = BackoffController(
            callback,
            config=ReconnectConfig(base_delay=0.01, max_delay=0.01, jitter=0),
            enabled=lambda: enabled,
        )
        c.record_failure()
        enabled = False
        await asyncio.sleep(0.05)
        callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_async_callback_runs_as_task(self):
        done = asyncio.Event()

        async def reconnect():
            done.set()

        c = _controller(reconnect, base_delay=0.01, max_delay=0.01, jitter=0)
        c.record_failure()
        await asyncio.wait_for(done.wait(), timeout=1.0)


class TestReconnectConfig:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"threshold": -1},
            {"base_delay": 0},
            {"factor": 0.5},
            {"base_delay": 2.0, "max_delay": 1.0},
            {"jitter": -0.1},
        ],
    )
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ValueError):
            ReconnectConfig(**kwargs)
