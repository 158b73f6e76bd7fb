"""
Async PostgreSQL connection pool built on asyncpg.

Wraps ``asyncpg.Pool`` with retry on connection failures, JSON/JSONB
codecs on every connection, and a transactional context manager. A pool
is addressed by a single DSN so the
[PrimaryStoreManager][chainindexer.core.store.PrimaryStoreManager] can
build an identically configured pool for a candidate primary with
[with_url()][chainindexer.core.pool.Pool.with_url].

Query methods ([fetch()][chainindexer.core.pool.Pool.fetch],
[fetchrow()][chainindexer.core.pool.Pool.fetchrow],
[fetchval()][chainindexer.core.pool.Pool.fetchval],
[execute()][chainindexer.core.pool.Pool.execute],
[executemany()][chainindexer.core.pool.Pool.executemany]) retry on
transient connection errors (``InterfaceError``,
``ConnectionDoesNotExistError``) and never on query-level errors.

Examples:
    ```python
    pool = Pool(PoolConfig(limits=PoolLimitsConfig(max_size=5)))
    await pool.connect()
    chains = await pool.fetch("SELECT chainid, name FROM chains")

    async with pool.transaction() as conn:
        await conn.execute("DELETE FROM forex_rates")
        await conn.execute("INSERT INTO forex_rates (base, rates, timestamp) VALUES ($1, $2, $3)", "USD", rates, ts)
    await pool.close()
    ```
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import AsyncIterator  # noqa: TC003
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any, Literal, cast
from urllib.parse import urlsplit, urlunsplit

import asyncpg
from pydantic import BaseModel, Field, SecretStr, ValidationInfo, field_validator, model_validator

from .exceptions import ConnectionPoolError
from .logger import Logger


def redact_dsn(url: str) -> str:
    """Return *url* with any password replaced by ``***`` for logging."""
    parts = urlsplit(url)
    if parts.password is None:
        return url
    netloc = parts.netloc.rsplit("@", 1)[-1]
    user = parts.username or ""
    return urlunsplit(parts._replace(netloc=f"{user}:***@{netloc}"))


def _json_encode(value: Any) -> str:
    # Pre-serialized strings pass through so they are not double-encoded
    if isinstance(value, str):
        return value
    return json.dumps(value)


async def _init_connection(conn: asyncpg.Connection[asyncpg.Record]) -> None:
    """Register JSON/JSONB codecs so dicts and lists bind directly."""
    for type_name in ("jsonb", "json"):
        await conn.set_type_codec(
            type_name,
            encoder=_json_encode,
            decoder=json.loads,
            schema="pg_catalog",
        )


# ---------------------------------------------------------------------------
# Configuration Models
# ---------------------------------------------------------------------------


class DatabaseConfig(BaseModel):
    """Where the pool connects.

    The DSN is read from the environment variable named by ``url_env``
    (default ``MASTER_DATABASE_URL``) unless ``url`` is given explicitly,
    which only the cutover path does. It never comes from a config file.

    Warning:
        ``url`` is a ``SecretStr`` because DSNs embed credentials. Log
        [redact_dsn()][chainindexer.core.pool.redact_dsn] output instead.
    """

    url_env: str = Field(
        default="MASTER_DATABASE_URL",
        min_length=1,
        description="Environment variable holding the primary database DSN",
    )
    url: SecretStr = Field(description="Database DSN (loaded from url_env)")

    @model_validator(mode="before")
    @classmethod
    def resolve_url(cls, data: Any) -> Any:
        """Resolve the DSN from the environment when not given explicitly."""
        if isinstance(data, dict) and "url" not in data:
            env_var = data.get("url_env", "MASTER_DATABASE_URL")
            value = os.getenv(env_var)
            if not value:
                raise ValueError(f"{env_var} environment variable not set")
            data = {**data, "url": SecretStr(value)}
        return data

    @field_validator("url")
    @classmethod
    def validate_scheme(cls, v: SecretStr) -> SecretStr:
        scheme = urlsplit(v.get_secret_value()).scheme
        if scheme not in ("postgres", "postgresql"):
            raise ValueError(f"database url must use postgres:// or postgresql://, got {scheme!r}")
        return v


class PoolLimitsConfig(BaseModel):
    """Connection pool size and recycling limits."""

    min_size: int = Field(default=1, ge=1, le=100, description="Minimum connections")
    max_size: int = Field(default=5, ge=1, le=200, description="Maximum connections")
    max_queries: int = Field(default=50_000, ge=100, description="Queries before recycling")
    max_inactive_connection_lifetime: float = Field(
        default=300.0, ge=0.0, description="Idle timeout (seconds)"
    )

    @field_validator("max_size")
    @classmethod
    def validate_max_size(cls, v: int, info: ValidationInfo) -> int:
        """Ensure max_size >= min_size."""
        min_size = info.data.get("min_size", 1)
        if v < min_size:
            raise ValueError(f"max_size ({v}) must be >= min_size ({min_size})")
        return v


class PoolTimeoutsConfig(BaseModel):
    """Timeout settings for pool operations (in seconds)."""

    acquisition: float = Field(default=10.0, ge=0.1, description="Connection acquisition timeout")
    query: float | None = Field(default=60.0, ge=0.1, description="Default per-query timeout")


class PoolRetryConfig(BaseModel):
    """Backoff between connection attempts.

    Exponential backoff doubles the delay each attempt
    (``initial_delay * 2^attempt``); linear backoff grows it by
    ``initial_delay`` per attempt. Both are capped at ``max_delay``.
    """

    max_attempts: int = Field(default=3, ge=1, le=10, description="Max retry attempts")
    initial_delay: float = Field(default=1.0, ge=0.0, description="Initial retry delay")
    max_delay: float = Field(default=10.0, ge=0.0, description="Maximum retry delay")
    exponential_backoff: bool = Field(default=True, description="Use exponential backoff")

    @field_validator("max_delay")
    @classmethod
    def validate_max_delay(cls, v: float, info: ValidationInfo) -> float:
        """Ensure max_delay >= initial_delay."""
        initial_delay = info.data.get("initial_delay", 1.0)
        if v < initial_delay:
            raise ValueError(f"max_delay ({v}) must be >= initial_delay ({initial_delay})")
        return v


class ServerSettingsConfig(BaseModel):
    """PostgreSQL session settings sent with every pooled connection.

    ``statement_timeout`` is in milliseconds; ``0`` disables it.
    """

    application_name: str = Field(default="chainindexer", description="Application name")
    timezone: str = Field(default="UTC", description="Timezone")
    statement_timeout: int = Field(
        default=300_000, ge=0, description="Max query execution time in milliseconds (0=unlimited)"
    )


class PoolConfig(BaseModel):
    """Aggregate configuration for the connection pool."""

    database: DatabaseConfig = Field(default_factory=lambda: DatabaseConfig.model_validate({}))
    limits: PoolLimitsConfig = Field(default_factory=PoolLimitsConfig)
    timeouts: PoolTimeoutsConfig = Field(default_factory=PoolTimeoutsConfig)
    retry: PoolRetryConfig = Field(default_factory=PoolRetryConfig)
    server_settings: ServerSettingsConfig = Field(default_factory=ServerSettingsConfig)


# ---------------------------------------------------------------------------
# Pool Class
# ---------------------------------------------------------------------------


class Pool:
    """Async PostgreSQL connection pool manager.

    Created disconnected; call [connect()][chainindexer.core.pool.Pool.connect]
    before the first query and [close()][chainindexer.core.pool.Pool.close] at shutdown. Pipelines never hold a ``Pool`` across cycles:
    they ask [AppConfig.pool()][chainindexer.core.state.AppConfig.pool] for
    the active one at the start of each unit of work.

    See Also:
        [PoolConfig][chainindexer.core.pool.PoolConfig]: Full configuration model.
        [StoreConnection][chainindexer.core.state.StoreConnection]: Pairs a
            pool with the DSN it was built from.
    """

    def __init__(self, config: PoolConfig | None = None) -> None:
        self._config = config or PoolConfig()
        self._pool: asyncpg.Pool[asyncpg.Record] | None = None
        self._is_connected: bool = False
        self._connection_lock = asyncio.Lock()
        self._logger = Logger("pool")

    def with_url(self, url: str) -> Pool:
        """Return a new, disconnected Pool with this pool's settings and another DSN.

        Args:
            url: DSN of the target database.

        Raises:
            pydantic.ValidationError: If *url* is not a postgres DSN.
        """
        database = DatabaseConfig(url_env=self._config.database.url_env, url=SecretStr(url))
        return Pool(config=self._config.model_copy(update={"database": database}))

    def _retry_delay(self, attempt: int) -> float:
        retry = self._config.retry
        if retry.exponential_backoff:
            delay = retry.initial_delay * (2**attempt)
        else:
            delay = retry.initial_delay * (attempt + 1)
        return float(min(delay, retry.max_delay))

    # -------------------------------------------------------------------------
    # Connection Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Create the asyncpg pool, retrying with backoff on failure.

        Idempotent, and guarded by a lock against concurrent creation.

        Raises:
            ConnectionPoolError: If all retry attempts are exhausted.
        """
        async with self._connection_lock:
            if self._is_connected:
                return

            dsn = self._config.database.url.get_secret_value()
            settings = self._config.server_settings
            self._logger.info("connection_starting", url=redact_dsn(dsn))

            for attempt in range(self._config.retry.max_attempts):
                try:
                    self._pool = await asyncpg.create_pool(
                        dsn=dsn,
                        min_size=self._config.limits.min_size,
                        max_size=self._config.limits.max_size,
                        max_queries=self._config.limits.max_queries,
                        max_inactive_connection_lifetime=self._config.limits.max_inactive_connection_lifetime,
                        timeout=self._config.timeouts.acquisition,
                        init=_init_connection,
                        server_settings={
                            "application_name": settings.application_name,
                            "timezone": settings.timezone,
                            "statement_timeout": str(settings.statement_timeout),
                        },
                    )
                    self._is_connected = True
                    self._logger.info("connection_established", url=redact_dsn(dsn))
                    return

                except (asyncpg.PostgresError, OSError, ConnectionError) as e:
                    if attempt + 1 >= self._config.retry.max_attempts:
                        self._logger.error(
                            "connection_failed",
                            url=redact_dsn(dsn),
                            attempts=attempt + 1,
                            error=str(e),
                        )
                        raise ConnectionPoolError(
                            f"Failed to connect to {redact_dsn(dsn)} after {attempt + 1} attempts: {e}"
                        ) from e

                    delay = self._retry_delay(attempt)
                    self._logger.warning(
                        "connection_retry",
                        attempt=attempt + 1,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

    async def close(self) -> None:
        """Close the pool, waiting for acquired connections to be released.

        Idempotent. Internal state is reset even if the close raises.
        """
        async with self._connection_lock:
            if self._pool is not None:
                try:
                    await self._pool.close()
                    self._logger.info("connection_closed")
                finally:
                    self._pool = None
                    self._is_connected = False

    # -------------------------------------------------------------------------
    # Connection Acquisition
    # -------------------------------------------------------------------------

    def acquire(self) -> AbstractAsyncContextManager[asyncpg.Connection[asyncpg.Record]]:
        """Acquire a connection; it returns to the pool when the context exits.

        Raises:
            RuntimeError: If the pool has not been connected yet.
        """
        if not self._is_connected or self._pool is None:
            raise RuntimeError("Pool not connected. Call connect() first.")
        return cast(
            "AbstractAsyncContextManager[asyncpg.Connection[asyncpg.Record]]",
            self._pool.acquire(),
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection[asyncpg.Record]]:
        """Acquire a connection inside a transaction.

        Commits on normal exit, rolls back if an exception propagates.
        """
        async with self.acquire() as conn, conn.transaction():
            yield conn

    # -------------------------------------------------------------------------
    # Query Methods (with retry for transient connection errors)
    # -------------------------------------------------------------------------

    async def _execute_with_retry(
        self,
        operation: Literal["fetch", "fetchrow", "fetchval", "execute", "executemany"],
        query: str,
        args: tuple[Any, ...],
        timeout: float | None,  # noqa: ASYNC109
        **kwargs: Any,
    ) -> Any:
        """Run one asyncpg operation, retrying only on broken connections.

        Each retry acquires a fresh connection so a dead socket is not reused.

        Raises:
            ConnectionPoolError: When every attempt hit a connection error.
        """
        max_attempts = self._config.retry.max_attempts
        if timeout is None:
            timeout = self._config.timeouts.query

        for attempt in range(max_attempts):
            try:
                async with self.acquire() as conn:
                    method = getattr(conn, operation)
                    return await method(query, *args, timeout=timeout, **kwargs)
            except (
                asyncpg.InterfaceError,
                asyncpg.ConnectionDoesNotExistError,
            ) as e:
                if attempt < max_attempts - 1:
                    delay = self._retry_delay(attempt)
                    self._logger.warning(
                        "query_retry",
                        operation=operation,
                        attempt=attempt + 1,
                        delay_s=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)
                    continue
                self._logger.error(
                    "query_failed",
                    operation=operation,
                    attempts=max_attempts,
                    error=str(e),
                )
                raise ConnectionPoolError(
                    f"{operation} failed after {max_attempts} attempts: {e}"
                ) from e

        raise RuntimeError("Unexpected state in _execute_with_retry")

    async def fetch(
        self,
        query: str,
        *args: Any,
        timeout: float | None = None,  # noqa: ASYNC109
    ) -> list[asyncpg.Record]:
        """Execute a query and return all rows (empty list if none)."""
        result = await self._execute_with_retry("fetch", query, args, timeout)
        return cast("list[asyncpg.Record]", result)

    async def fetchrow(
        self,
        query: str,
        *args: Any,
        timeout: float | None = None,  # noqa: ASYNC109
    ) -> asyncpg.Record | None:
        """Execute a query and return the first row, or None."""
        result = await self._execute_with_retry("fetchrow", query, args, timeout)
        return cast("asyncpg.Record | None", result)

    async def fetchval(
        self,
        query: str,
        *args: Any,
        column: int = 0,
        timeout: float | None = None,  # noqa: ASYNC109
    ) -> Any:
        """Execute a query and return one column of the first row, or None."""
        return await self._execute_with_retry("fetchval", query, args, timeout, column=column)

    async def execute(self, query: str, *args: Any, timeout: float | None = None) -> str:  # noqa: ASYNC109
        """Execute a statement and return its status tag (e.g. ``"INSERT 0 1"``)."""
        result = await self._execute_with_retry("execute", query, args, timeout)
        return cast("str", result)

    async def executemany(
        self,
        query: str,
        rows: list[tuple[Any, ...]],
        timeout: float | None = None,  # noqa: ASYNC109
    ) -> None:
        """Execute *query* once per parameter tuple in *rows*, atomically.

        asyncpg runs ``executemany`` as one implicit transaction, so either
        every row is written or none is.
        """
        if not rows:
            return
        await self._execute_with_retry("executemany", query, (rows,), timeout)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def config(self) -> PoolConfig:
        return self._config

    @property
    def url(self) -> str:
        """The DSN this pool targets (contains credentials)."""
        return self._config.database.url.get_secret_value()

    def __repr__(self) -> str:
        return f"Pool(url={redact_dsn(self.url)}, connected={self._is_connected})"
