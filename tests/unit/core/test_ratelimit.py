"""
Unit tests for core.ratelimit module.

Tests:
- Constructor validation and spacing
- try_acquire() / available() bucket accounting
- Minimum spacing between grants even with tokens available
- Refill computed from elapsed time, capped at capacity
- FIFO acquisition and a limiter shared by two concurrent callers
- Background refill task lifecycle
"""

import asyncio
import time

import pytest

from chainindexer.core.ratelimit import RateLimiter


class TestConstruction:
    """RateLimiter constructor."""

    def test_spacing_is_window_over_capacity(self) -> None:
        limiter = RateLimiter(28, 60.0, name="coingecko")
        assert limiter.spacing == pytest.approx(60.0 / 28)
        assert limiter.capacity == 28
        assert limiter.name == "coingecko"

    def test_starts_full(self) -> None:
        assert RateLimiter(5, 1.0).available() == 5

    @pytest.mark.parametrize("capacity", [0, -1, 1.5, True])
    def test_rejects_invalid_capacity(self, capacity: object) -> None:
        with pytest.raises(ValueError, match="capacity"):
            RateLimiter(capacity, 1.0)  # type: ignore[arg-type]

    @pytest.mark.parametrize("window", [0, -5.0])
    def test_rejects_invalid_window(self, window: float) -> None:
        with pytest.raises(ValueError, match="window"):
            RateLimiter(1, window)

    def test_repr_shows_budget(self) -> None:
        assert "capacity=3" in repr(RateLimiter(3, 1.0, name="x"))


class TestTryAcquire:
    """Non-blocking acquisition."""

    async def test_first_grant_is_immediate(self) -> None:
        limiter = RateLimiter(2, 10.0)
        assert limiter.try_acquire() is True
        assert limiter.available() == 1
        await limiter.close()

    async def test_spacing_blocks_second_grant_with_tokens_left(self) -> None:
        """A full bucket does not allow a burst: the second grant must wait."""
        limiter = RateLimiter(5, 10.0)
        assert limiter.try_acquire() is True
        assert limiter.try_acquire() is False
        assert limiter.available() == 4
        await limiter.close()

    async def test_grant_allowed_after_spacing_elapsed(self) -> None:
        limiter = RateLimiter(5, 10.0)
        assert limiter.try_acquire() is True
        # Pretend the last grant happened one full spacing ago
        limiter._last_grant = time.monotonic() - limiter.spacing
        assert limiter.try_acquire() is True
        await limiter.close()

    async def test_empty_bucket_refuses(self) -> None:
        limiter = RateLimiter(1, 10.0)
        assert limiter.try_acquire() is True
        limiter._last_grant = None
        assert limiter.try_acquire() is False
        await limiter.close()

    async def test_refuses_while_acquire_is_queued(self) -> None:
        limiter = RateLimiter(1, 10.0)
        async with limiter._queue:
            assert limiter.try_acquire() is False
        await limiter.close()


class TestRefill:
    """Token refill from elapsed monotonic time."""

    def test_refills_one_token_per_spacing(self) -> None:
        limiter = RateLimiter(4, 4.0)
        limiter._tokens = 0
        limiter._last_refill = time.monotonic() - 2.5
        assert limiter.available() == 2

    def test_never_exceeds_capacity(self) -> None:
        limiter = RateLimiter(3, 3.0)
        limiter._tokens = 1
        limiter._last_refill = time.monotonic() - 100.0
        assert limiter.available() == 3

    def test_refill_is_idempotent(self) -> None:
        limiter = RateLimiter(4, 4.0)
        limiter._tokens = 0
        now = time.monotonic()
        limiter._last_refill = now - 1.5
        limiter._refill(now)
        limiter._refill(now)
        assert limiter._tokens == 1

    def test_partial_interval_is_kept(self) -> None:
        """Leftover time toward the next token is not discarded."""
        limiter = RateLimiter(4, 4.0)
        limiter._tokens = 0
        now = time.monotonic()
        limiter._last_refill = now - 1.5
        limiter._refill(now)
        assert limiter._last_refill == pytest.approx(now - 0.5)


class TestAcquire:
    """Blocking acquisition."""

    async def test_waits_for_spacing(self) -> None:
        limiter = RateLimiter(10, 0.5)
        await limiter.acquire()
        first = limiter._last_grant
        await limiter.acquire()
        second = limiter._last_grant
        assert first is not None and second is not None
        assert second - first >= limiter.spacing - 1e-9
        await limiter.close()

    async def test_shared_limiter_never_exceeded_by_two_callers(self) -> None:
        """Two pipelines sharing one budget never get grants closer than spacing."""
        limiter = RateLimiter(1, 0.05)
        grants: list[float] = []

        async def caller(n: int) -> None:
            for _ in range(n):
                await limiter.acquire()
                grants.append(limiter._last_grant)  # type: ignore[arg-type]

        await asyncio.gather(caller(4), caller(4))

        assert len(grants) == 8
        gaps = [b - a for a, b in zip(grants, grants[1:], strict=False)]
        assert all(gap >= limiter.spacing - 1e-9 for gap in gaps)
        await limiter.close()

    async def test_waiters_served_in_arrival_order(self) -> None:
        limiter = RateLimiter(1, 0.02)
        order: list[int] = []

        async def caller(i: int) -> None:
            await limiter.acquire()
            order.append(i)

        tasks = []
        for i in range(4):
            tasks.append(asyncio.create_task(caller(i)))
            await asyncio.sleep(0)
        await asyncio.gather(*tasks)

        assert order == [0, 1, 2, 3]
        await limiter.close()

    @pytest.mark.slow
    async def test_one_per_second_budget(self) -> None:
        limiter = RateLimiter(1, 1.0)
        start = time.monotonic()
        for _ in range(3):
            await limiter.acquire()
        assert time.monotonic() - start >= 1.99
        await limiter.close()


class TestRefillTask:
    """Background refill task lifecycle."""

    async def test_started_lazily_and_stopped_by_close(self) -> None:
        limiter = RateLimiter(2, 1.0)
        assert limiter._refill_task is None

        limiter.try_acquire()
        task = limiter._refill_task
        assert task is not None and not task.done()

        await limiter.close()
        assert limiter._refill_task is None
        assert task.cancelled() or task.done()

    async def test_close_is_idempotent(self) -> None:
        limiter = RateLimiter(2, 1.0)
        await limiter.close()
        await limiter.close()

    def test_no_task_outside_event_loop(self) -> None:
        limiter = RateLimiter(2, 1.0)
        limiter.try_acquire()
        assert limiter._refill_task is None
