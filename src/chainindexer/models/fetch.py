"""Typed outcomes of a single logical upstream fetch.

[fetch_with_retry()][chainindexer.utils.http.fetch_with_retry] never raises
on malformed upstream input; it always returns exactly one of the three
variants below. ``FetchEmpty`` is a legitimate end-of-data signal and is
never treated as an error by callers.

Examples:
    ```python
    outcome = await fetch_with_retry(session, url)
    if isinstance(outcome, FetchSuccess):
        handle(outcome.payload)
    elif isinstance(outcome, FetchFailed):
        logger.warning("fetch_failed", reason=outcome.reason)
    ```
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class FetchSuccess:
    """A 2xx response whose body parsed as JSON.

    Attributes:
        payload: The decoded JSON value (dict, list, str, number, bool).
    """

    payload: Any


@dataclass(frozen=True, slots=True)
class FetchEmpty:
    """A 2xx response with a blank body or the literal ``[]``."""


@dataclass(frozen=True, slots=True)
class FetchFailed:
    """Every attempt failed, or the circuit breaker opened.

    Attributes:
        reason: Description of the last failure (transport error, HTTP
            status, or JSON decode error).
        attempts: Number of attempts actually made.
    """

    reason: str
    attempts: int = 0


FetchOutcome = FetchSuccess | FetchEmpty | FetchFailed
