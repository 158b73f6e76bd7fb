"""
Validated live cutover of the primary database.

[PrimaryStoreManager][chainindexer.core.store.PrimaryStoreManager] swaps the
[StoreConnection][chainindexer.core.state.StoreConnection] published in
[AppConfig][chainindexer.core.state.AppConfig] only after the candidate has
passed every check. The protocol is all-or-nothing:

1. Build a new [Pool][chainindexer.core.pool.Pool] with the active pool's
   settings and the candidate DSN, and connect it. The active pool is not
   touched.
2. ``SELECT pg_is_in_recovery()``: a hot standby is rejected.
3. Write probe on one connection: create a temporary scratch table,
   insert a row, drop it.
4. Publish the candidate under the state's writer lock.

Any failure closes the candidate and raises
[CutoverValidationError][chainindexer.core.exceptions.CutoverValidationError];
the active connection afterwards is the very object it was before. The
previous pool is closed only after ``retire_after`` seconds so cycles that
already hold it can finish.

Examples:
    ```python
    manager = PrimaryStoreManager(state, retire_after=60)
    try:
        await manager.switch_primary("postgresql://writer@db-2/indexer")
    except CutoverValidationError as e:
        print(f"kept current primary: {e}")
    ```
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import asyncpg
import pydantic

from .exceptions import ConnectionPoolError, CutoverValidationError
from .logger import Logger
from .pool import Pool, redact_dsn
from .state import AppConfig, StoreConnection


_RECOVERY_QUERY = "SELECT pg_is_in_recovery()"
_PROBE_CREATE = "CREATE TEMPORARY TABLE IF NOT EXISTS health_check (id SERIAL PRIMARY KEY)"
_PROBE_INSERT = "INSERT INTO health_check DEFAULT VALUES"
_PROBE_DROP = "DROP TABLE health_check"


class PrimaryStoreManager:
    """Owns the cutover protocol for the active store connection.

    Cutovers are serialized by an internal lock so two concurrent requests
    never race on the same swap.

    Args:
        state: Shared state holding the active connection.
        retire_after: Seconds to keep the previous pool open after a swap.
        pool_factory: Builds a disconnected candidate pool from a DSN.
            Defaults to ``active_pool.with_url``.
    """

    def __init__(
        self,
        state: AppConfig,
        *,
        retire_after: float = 60.0,
        pool_factory: Callable[[str], Pool] | None = None,
    ) -> None:
        self._state = state
        self._retire_after = retire_after
        self._pool_factory = pool_factory
        self._switch_lock = asyncio.Lock()
        self._retiring: dict[asyncio.Task[None], StoreConnection] = {}
        self._logger = Logger("store")

    async def _build_candidate(self, url: str) -> Pool:
        if self._pool_factory is not None:
            return self._pool_factory(url)
        active = await self._state.pool()
        return active.with_url(url)

    @staticmethod
    async def _validate(pool: Pool) -> None:
        """Run the replica check and the write probe on one connection."""
        async with pool.acquire() as conn:
            in_recovery = await conn.fetchval(_RECOVERY_QUERY)
            if in_recovery:
                raise CutoverValidationError("candidate is a read-only replica (in recovery)")
            await conn.execute(_PROBE_CREATE)
            await conn.execute(_PROBE_INSERT)
            await conn.execute(_PROBE_DROP)

    async def _open_validated(self, url: str) -> Pool:
        """Connect and validate a candidate, closing it on any failure."""
        redacted = redact_dsn(url)
        try:
            candidate = await self._build_candidate(url)
        except pydantic.ValidationError as e:
            raise CutoverValidationError(f"invalid candidate url {redacted}: {e}") from e

        try:
            await candidate.connect()
            await self._validate(candidate)
        except CutoverValidationError:
            await candidate.close()
            raise
        except (
            ConnectionPoolError,
            asyncpg.PostgresError,
            asyncpg.InterfaceError,
            OSError,
        ) as e:
            await candidate.close()
            raise CutoverValidationError(f"candidate {redacted} failed validation: {e}") from e
        return candidate

    async def validate_candidate(self, url: str) -> None:
        """Run every cutover check against *url* without swapping.

        Raises:
            CutoverValidationError: If the candidate is unreachable, a
                replica, or not writable.
        """
        candidate = await self._open_validated(url)
        await candidate.close()
        self._logger.info("candidate_validated", url=redact_dsn(url))

    async def switch_primary(self, url: str) -> StoreConnection:
        """Validate *url* and make it the active primary.

        Returns:
            The newly active connection.

        Raises:
            CutoverValidationError: If any check fails. The active
                connection is unchanged.
        """
        async with self._switch_lock:
            redacted = redact_dsn(url)
            self._logger.info("cutover_started", candidate=redacted)
            try:
                candidate = await self._open_validated(url)
            except CutoverValidationError as e:
                self._logger.warning("cutover_rejected", candidate=redacted, error=str(e))
                raise

            connection = StoreConnection(url=url, pool=candidate)
            previous = await self._state.swap_connection(connection)
            self._logger.info("primary_switched", previous=previous.redacted_url, active=redacted)
            self._schedule_retire(previous)
            return connection

    # -------------------------------------------------------------------------
    # Retiring the previous pool
    # -------------------------------------------------------------------------

    def _schedule_retire(self, previous: StoreConnection) -> None:
        task = asyncio.create_task(self._retire(previous), name="retire_pool")
        self._retiring[task] = previous
        task.add_done_callback(lambda t: self._retiring.pop(t, None))

    async def _retire(self, previous: StoreConnection) -> None:
        await asyncio.sleep(self._retire_after)
        try:
            await previous.pool.close()
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            self._logger.warning("retire_failed", url=previous.redacted_url, error=str(e))
            return
        self._logger.info("pool_retired", url=previous.redacted_url)

    async def close(self) -> None:
        """Close every pool still waiting for retirement without further delay."""
        pending = list(self._retiring.items())
        for task, _ in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*(task for task, _ in pending), return_exceptions=True)
        for _, connection in pending:
            await connection.pool.close()
