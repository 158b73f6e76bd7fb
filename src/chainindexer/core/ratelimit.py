"""
Token-bucket rate limiter with minimum spacing between grants.

A [RateLimiter][chainindexer.core.ratelimit.RateLimiter] bounds the call
rate to one upstream. It holds at most ``capacity`` tokens and refills one
every ``window / capacity`` seconds. Independently of the token count,
two grants are never closer together than that same refill interval, so a
full bucket does not turn into a burst at the start of a cycle.

Waiters are served first come, first served: ``acquire()`` queues on an
``asyncio.Lock`` (FIFO) and only the head of the queue sleeps until the
next token is due.

Refill is computed from elapsed monotonic time, so it is idempotent: a
background task tops the bucket up periodically, and every ``acquire()``,
``try_acquire()`` and ``available()`` call does the same catch-up, so a
missed tick never loses or duplicates tokens.

Examples:
    ```python
    limiter = RateLimiter(capacity=28, window=60.0, name="coingecko")
    await limiter.acquire()   # returns once a request is permitted
    limiter.try_acquire()     # False if it would have to wait
    limiter.available()       # whole tokens currently in the bucket
    ```
"""

from __future__ import annotations

import asyncio
import contextlib
import time

from .logger import Logger


class RateLimiter:
    """Token bucket of ``capacity`` grants per ``window`` seconds.

    Attributes:
        name: Label used in log records.
        capacity: Maximum number of stored tokens.
        window: Seconds it takes to refill an empty bucket.
        spacing: Refill interval and minimum gap between two grants
            (``window / capacity``).
    """

    def __init__(self, capacity: int, window: float, *, name: str = "default") -> None:
        """Create a full bucket.

        Raises:
            ValueError: If ``capacity < 1`` or ``window <= 0``.
        """
        if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < 1:
            raise ValueError(f"capacity must be a positive int, got {capacity!r}")
        if window <= 0:
            raise ValueError(f"window must be positive, got {window!r}")

        self.name = name
        self.capacity = capacity
        self.window = float(window)
        self.spacing = self.window / capacity

        self._tokens = capacity
        self._last_refill = time.monotonic()
        self._last_grant: float | None = None
        self._queue = asyncio.Lock()
        self._refill_task: asyncio.Task[None] | None = None
        self._logger = Logger("ratelimit").bind(limiter=name)

    # -------------------------------------------------------------------------
    # Bucket arithmetic
    # -------------------------------------------------------------------------

    def _refill(self, now: float) -> None:
        if self._tokens >= self.capacity:
            # A full bucket does not bank time toward tokens it cannot hold
            self._last_refill = now
            return
        added = int((now - self._last_refill) // self.spacing)
        if added <= 0:
            return
        if self._tokens + added >= self.capacity:
            self._tokens = self.capacity
            self._last_refill = now
        else:
            self._tokens += added
            self._last_refill += added * self.spacing

    def _delay(self, now: float) -> float:
        """Seconds until a grant is allowed (``<= 0`` means now)."""
        token_delay = 0.0 if self._tokens >= 1 else self._last_refill + self.spacing - now
        spacing_delay = 0.0 if self._last_grant is None else self._last_grant + self.spacing - now
        return max(token_delay, spacing_delay)

    def _grant(self, now: float) -> None:
        self._tokens -= 1
        self._last_grant = now

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def acquire(self) -> None:
        """Wait until the next request is permitted, then consume one token."""
        self._ensure_refill_task()
        async with self._queue:
            while True:
                now = time.monotonic()
                self._refill(now)
                delay = self._delay(now)
                if delay <= 0:
                    self._grant(now)
                    return
                await asyncio.sleep(delay)

    def try_acquire(self) -> bool:
        """Consume a token only if that is possible without waiting.

        Never jumps ahead of callers already queued in ``acquire()``.
        """
        self._ensure_refill_task()
        if self._queue.locked():
            return False
        now = time.monotonic()
        self._refill(now)
        if self._delay(now) > 0:
            return False
        self._grant(now)
        return True

    def available(self) -> int:
        """Whole tokens currently in the bucket."""
        self._refill(time.monotonic())
        return self._tokens

    # -------------------------------------------------------------------------
    # Background refill
    # -------------------------------------------------------------------------

    def _ensure_refill_task(self) -> None:
        if self._refill_task is not None and not self._refill_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._refill_task = loop.create_task(self._refill_loop(), name=f"ratelimit:{self.name}")

    async def _refill_loop(self) -> None:
        self._logger.debug("refill_task_started", spacing_s=self.spacing)
        while True:
            await asyncio.sleep(self.spacing)
            self._refill(time.monotonic())

    async def close(self) -> None:
        """Stop the background refill task. Idempotent."""
        task, self._refill_task = self._refill_task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def __repr__(self) -> str:
        return (
            f"RateLimiter(name={self.name!r}, capacity={self.capacity}, "
            f"window={self.window}, available={self._tokens})"
        )
