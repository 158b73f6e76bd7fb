"""HTTP utilities for chainindexer.

Provides bounded body reading and
[fetch_with_retry()][chainindexer.utils.http.fetch_with_retry], the single
entry point every pipeline uses to call an upstream. One logical fetch
consumes exactly one rate-limit grant however many attempts it takes, and
always resolves to a typed
[FetchOutcome][chainindexer.models.fetch.FetchOutcome] instead of raising.

Note:
    This module sits in the ``utils`` layer and depends only on the
    ``models`` layer and third-party libraries (``aiohttp``). The limiter
    is accepted structurally through
    [SupportsAcquire][chainindexer.utils.http.SupportsAcquire] so ``utils``
    never imports ``core``.

See Also:
    [RateLimiter][chainindexer.core.ratelimit.RateLimiter]: The limiter
        passed by every pipeline.
    [SyncPipeline][chainindexer.services.common.pipeline.SyncPipeline]:
        Maps fetch outcomes onto cursor movement.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

import aiohttp

from chainindexer.models.fetch import FetchEmpty, FetchFailed, FetchOutcome, FetchSuccess


logger = logging.getLogger(__name__)

DEFAULT_MAX_RESPONSE_SIZE = 16 * 1024 * 1024


class SupportsAcquire(Protocol):
    """Anything with an awaitable ``acquire()``, e.g. a rate limiter."""

    async def acquire(self) -> None: ...


@dataclass(slots=True)
class RequestOptions:
    """Mutable per-request options handed to a ``customize`` callback.

    Attributes:
        headers: Extra request headers (API keys, ``Accept``).
        params: Query-string parameters merged into the URL.
    """

    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)


RequestCustomizer = Callable[[RequestOptions], None]


async def _read_bounded(response: aiohttp.ClientResponse, max_size: int) -> bytes:
    """Read an entire response body with size enforcement.

    Accumulates chunks from the response stream until EOF or the size limit
    is exceeded. Unlike a single ``response.content.read(n)`` call, this
    correctly handles chunked transfer-encoding where a single read may
    return fewer bytes than requested even when more data is available.

    Raises:
        ValueError: If the response body exceeds *max_size*.
    """
    chunks: list[bytes] = []
    total = 0
    while True:
        chunk = await response.content.read(max_size + 1 - total)
        if not chunk:
            break
        total += len(chunk)
        if total > max_size:
            raise ValueError(f"Response body too large: >{max_size} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


def is_empty_body(body: bytes) -> bool:
    """Whether *body* is the upstream's end-of-data signal: blank or ``[]``."""
    stripped = body.strip()
    return not stripped or stripped == b"[]"


async def _attempt(
    session: aiohttp.ClientSession,
    url: str,
    options: RequestOptions,
    timeout: aiohttp.ClientTimeout,
    max_size: int,
) -> FetchOutcome:
    """Send one GET and classify the response.

    Transport errors propagate to the caller; every other failure is
    returned as a ``FetchFailed`` with ``attempts=0``.
    """
    async with session.get(
        url,
        headers=options.headers or None,
        params=options.params or None,
        timeout=timeout,
    ) as response:
        if not 200 <= response.status < 300:
            return FetchFailed(f"HTTP {response.status}")
        body = await _read_bounded(response, max_size)

    if is_empty_body(body):
        return FetchEmpty()
    try:
        return FetchSuccess(json.loads(body))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        return FetchFailed(f"invalid JSON body: {e}")


async def fetch_with_retry(  # noqa: PLR0913
    session: aiohttp.ClientSession,
    url: str,
    customize: RequestCustomizer | None = None,
    *,
    max_attempts: int = 5,
    max_consecutive_failures: int = 3,
    limiter: SupportsAcquire | None = None,
    base_delay: float = 0.3,
    timeout: float = 10.0,  # noqa: ASYNC109
    max_size: int = DEFAULT_MAX_RESPONSE_SIZE,
) -> FetchOutcome:
    """Perform one logical GET with retry, linear backoff and circuit breaking.

    Each attempt is classified as:

    - transport error, timeout or non-2xx status: failure
    - 2xx with a blank body or literal ``[]``: ``FetchEmpty``, returned at once
    - 2xx whose body is not valid JSON: failure
    - 2xx with a valid JSON body: ``FetchSuccess``, returned at once

    Once ``max_consecutive_failures`` failures have happened in a row the
    call gives up early, even if attempts remain. Between attempts it
    sleeps ``base_delay * attempt``; it never sleeps after the last one.

    Args:
        session: Shared aiohttp session.
        url: Request URL.
        customize: Callback that fills headers and query parameters.
        max_attempts: Attempt budget for this logical call.
        max_consecutive_failures: Circuit-breaker threshold.
        limiter: Acquired once before the first attempt; retries never
            consume another grant.
        base_delay: Linear backoff unit in seconds.
        timeout: Total per-attempt timeout in seconds.
        max_size: Maximum accepted body size in bytes.

    Returns:
        A ``FetchSuccess``, ``FetchEmpty`` or ``FetchFailed``.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
    if max_consecutive_failures < 1:
        raise ValueError(f"max_consecutive_failures must be >= 1, got {max_consecutive_failures}")

    options = RequestOptions()
    if customize is not None:
        customize(options)

    if limiter is not None:
        await limiter.acquire()

    client_timeout = aiohttp.ClientTimeout(total=timeout)
    consecutive = 0
    reason = "no attempt made"

    for attempt in range(1, max_attempts + 1):
        try:
            outcome = await _attempt(session, url, options, client_timeout, max_size)
        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            outcome = FetchFailed(f"{type(e).__name__}: {e}")

        if not isinstance(outcome, FetchFailed):
            return outcome

        consecutive += 1
        reason = outcome.reason
        if consecutive >= max_consecutive_failures:
            logger.warning(
                "fetch_circuit_open url=%s attempts=%d reason=%s", url, attempt, reason
            )
            return FetchFailed(reason, attempts=attempt)
        if attempt < max_attempts:
            delay = base_delay * attempt
            logger.debug(
                "fetch_retry url=%s attempt=%d delay_s=%.2f reason=%s", url, attempt, delay, reason
            )
            await asyncio.sleep(delay)

    logger.warning("fetch_exhausted url=%s attempts=%d reason=%s", url, max_attempts, reason)
    return FetchFailed(reason, attempts=max_attempts)
