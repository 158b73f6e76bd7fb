"""chainindexer exception hierarchy.

Provides typed exceptions for every error category so callers can tell
transient failures from fatal ones, and so ``CancelledError`` always
propagates untouched past the broad error boundaries.

Exception hierarchy:

```text
ChainIndexerError (base -- never raised directly)
├── ConfigurationError       -- missing env vars, bad YAML, invalid admin input
├── DatabaseError            -- pool/query failures
│   ├── ConnectionPoolError  -- transient: pool exhausted, network blip
│   └── PersistenceError     -- a record write failed (counted, not fatal)
├── TransportError           -- upstream unreachable, non-2xx, bad body
├── ValidationError          -- well-formed response missing required fields
├── SyncAbortedError         -- consecutive transport failures, cursor rolled back
└── CutoverValidationError   -- candidate primary rejected, active pool unchanged
```

An empty upstream response is not an error and has no exception: it is the
[FetchEmpty][chainindexer.models.fetch.FetchEmpty] outcome.

See Also:
    [Pool][chainindexer.core.pool.Pool]: Raises
        [ConnectionPoolError][chainindexer.core.exceptions.ConnectionPoolError]
        on transient connection failures.
    [PrimaryStoreManager][chainindexer.core.store.PrimaryStoreManager]: Raises
        [CutoverValidationError][chainindexer.core.exceptions.CutoverValidationError].
    [Scheduler][chainindexer.core.scheduler.Scheduler]: Catches every
        exception raised by a pipeline cycle and keeps looping.
"""

from __future__ import annotations


class ChainIndexerError(Exception):
    """Base exception for all chainindexer errors.

    Never raised directly -- always use a specific subclass.
    """


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(ChainIndexerError):
    """Invalid or missing configuration (YAML, env vars, CLI flags, admin input).

    Fatal at startup: the process does not start.

    See Also:
        [load_yaml()][chainindexer.core.yaml.load_yaml]: YAML loading function
            that may trigger configuration errors.
    """


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


class DatabaseError(ChainIndexerError):
    """Base for all database-related errors."""


class ConnectionPoolError(DatabaseError):
    """Transient database error: pool exhausted, connection refused, network blip.

    Callers may retry after a backoff.
    """


class PersistenceError(DatabaseError):
    """Writing one record (or one batch) to the destination store failed.

    Logged and counted per item by the sync pipelines; it does not abort
    the cycle and never moves the cursor.
    """


# ---------------------------------------------------------------------------
# Upstream
# ---------------------------------------------------------------------------


class TransportError(ChainIndexerError):
    """An upstream call could not produce data: network error, timeout, non-2xx.

    Raised by pipeline steps that cannot proceed without the listing they
    asked for. Per-item fetch failures are reported as
    [FetchFailed][chainindexer.models.fetch.FetchFailed] instead.
    """


class ValidationError(ChainIndexerError):
    """A well-formed upstream response is missing required fields.

    The item is skipped permanently for this cycle and does not count
    against the transport circuit breaker.
    """


class SyncAbortedError(ChainIndexerError):
    """A sync cycle hit too many consecutive transport failures.

    Attributes:
        stream_id: Cursor stream that was rolled back.
        first_failure_id: Id of the first item in the failing streak.
        cursor: Position the cursor was rolled back to.
    """

    def __init__(self, stream_id: str, first_failure_id: int, cursor: int, reason: str) -> None:
        super().__init__(
            f"{stream_id}: aborted at item {first_failure_id}, cursor rolled back to {cursor}: {reason}"
        )
        self.stream_id = stream_id
        self.first_failure_id = first_failure_id
        self.cursor = cursor


# ---------------------------------------------------------------------------
# Cutover
# ---------------------------------------------------------------------------


class CutoverValidationError(ChainIndexerError):
    """A candidate primary database was rejected.

    The candidate was unreachable, is a read-only replica, or failed the
    write probe. The previously active connection is left untouched.
    """
