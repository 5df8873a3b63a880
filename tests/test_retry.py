"""Tests for the shared backoff policy and run context."""

from __future__ import annotations

import asyncio
import time

import pytest

from billing_export.context import RunContext, run_blocking
from billing_export.errors import RunCancelled
from billing_export.retry import BackoffPolicy


class TestBackoffPolicy:
    def test_exponential_growth_is_capped(self) -> None:
        policy = BackoffPolicy(max_attempts=6, interval=1.0, multiplier=2.0, max_interval=5.0, jitter=0.0)

        assert list(policy.delays()) == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_fixed_policy(self) -> None:
        policy = BackoffPolicy.fixed(0.5, max_attempts=3)

        assert list(policy.delays()) == [0.5, 0.5]

    def test_jitter_stays_within_fraction(self) -> None:
        policy = BackoffPolicy(interval=2.0, multiplier=1.0, max_interval=2.0, jitter=0.2)

        for _ in range(50):
            assert 2.0 <= policy.delay(1) <= 2.4

    def test_single_attempt_has_no_delays(self) -> None:
        assert list(BackoffPolicy(max_attempts=1).delays()) == []

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_attempts": 0}, {"interval": -1.0}, {"multiplier": 0.5}],
    )
    def test_invalid_policy(self, kwargs: dict[str, float]) -> None:
        with pytest.raises(ValueError):
            BackoffPolicy(**kwargs)


class TestRunContext:
    @pytest.mark.asyncio
    async def test_sleep_completes_without_cancellation(self) -> None:
        ctx = RunContext()
        start = time.monotonic()

        await ctx.sleep(0.05)

        assert time.monotonic() - start >= 0.04
        assert not ctx.cancelled

    @pytest.mark.asyncio
    async def test_cancel_unblocks_sleep_promptly(self) -> None:
        ctx = RunContext()
        asyncio.get_running_loop().call_later(0.05, ctx.cancel, "user abort")
        start = time.monotonic()

        with pytest.raises(RunCancelled, match="user abort"):
            await ctx.sleep(10)

        assert time.monotonic() - start < 1.0

    @pytest.mark.asyncio
    async def test_deadline_cancels_run(self) -> None:
        ctx = RunContext(deadline_seconds=0.05)
        ctx.start_deadline()

        with pytest.raises(RunCancelled):
            await ctx.sleep(5)

        assert ctx.reason is not None
        assert "deadline" in ctx.reason

    @pytest.mark.asyncio
    async def test_stop_deadline_disarms_timer(self) -> None:
        ctx = RunContext(deadline_seconds=0.05)
        ctx.start_deadline()
        ctx.stop_deadline()

        await ctx.sleep(0.1)

        assert not ctx.cancelled

    @pytest.mark.asyncio
    async def test_first_cancel_reason_wins(self) -> None:
        ctx = RunContext()
        ctx.cancel("first")
        ctx.cancel("second")

        assert ctx.reason == "first"
        with pytest.raises(RunCancelled):
            ctx.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_run_blocking_passes_arguments(self) -> None:
        def add(a: int, b: int = 0) -> int:
            return a + b

        assert await run_blocking(add, 2, b=3) == 5
