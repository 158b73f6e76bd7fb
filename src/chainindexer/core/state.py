"""
Process-wide shared configuration guarded by one reader/writer lock.

[AppConfig][chainindexer.core.state.AppConfig] is created once at startup
and injected into every pipeline, the scheduler, the store manager and
the administrative commands. It holds everything that may change while
the process runs:

- the active [StoreConnection][chainindexer.core.state.StoreConnection]
- upstream credentials
- per-stream cursor positions
- per-pipeline intervals
- explorer endpoints per chain
- the metadata initialization flag

Reads take the reader lock and writes take the writer lock only for the
single field update. No method holds either lock across network or
database I/O: callers do their I/O first and publish the result after.

Rate limiters live here too but are fixed at construction, so handing one
out needs no lock.

[IndexerConfig][chainindexer.core.state.IndexerConfig] is the pydantic
model of the YAML file the state is built from.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import aiorwlock
from pydantic import BaseModel, Field, SecretStr, field_validator

from chainindexer.models.constants import Upstream

from .exceptions import ConfigurationError
from .logger import Logger
from .metrics import MetricsConfig
from .pool import Pool, PoolConfig, redact_dsn
from .ratelimit import RateLimiter


if TYPE_CHECKING:
    from collections.abc import Iterable


# ---------------------------------------------------------------------------
# Configuration Models
# ---------------------------------------------------------------------------

DEFAULT_EXPLORER_ENDPOINTS: dict[int, str] = {
    1: "https://eth.blockscout.com/api/v2/addresses",
    42161: "https://arbitrum.blockscout.com/api/v2/addresses",
    8453: "https://base.blockscout.com/api/v2/addresses",
}


class CredentialsConfig(BaseModel):
    """Names of the environment variables holding upstream API keys.

    Keys are never read from configuration files. A missing key is only
    fatal when a pipeline that needs it is enabled (see
    [AppConfig.require_credentials()][chainindexer.core.state.AppConfig.require_credentials]).
    """

    coingecko_key_env: str = Field(default="COINGECKO_KEY", min_length=1)
    openexchangerates_key_env: str = Field(default="OPENEXCHANGERATES_KEY", min_length=1)

    def resolve(self) -> dict[Upstream, SecretStr | None]:
        """Read every key from the environment; unset or blank keys map to None."""
        env_names = {
            Upstream.COINGECKO: self.coingecko_key_env,
            Upstream.OPENEXCHANGERATES: self.openexchangerates_key_env,
        }
        resolved: dict[Upstream, SecretStr | None] = {}
        for upstream, env_name in env_names.items():
            value = os.getenv(env_name, "").strip()
            resolved[upstream] = SecretStr(value) if value else None
        return resolved


class RateBudgetConfig(BaseModel):
    """Token-bucket budget for one upstream: ``capacity`` grants per ``window`` seconds."""

    capacity: int = Field(ge=1, description="Grants per window")
    window: float = Field(gt=0.0, description="Window length in seconds")


def _default_rate_limits() -> dict[Upstream, RateBudgetConfig]:
    return {
        Upstream.COINGECKO: RateBudgetConfig(capacity=28, window=60.0),
        Upstream.EXPLORER: RateBudgetConfig(capacity=5, window=1.0),
        Upstream.OPENEXCHANGERATES: RateBudgetConfig(capacity=1, window=1.0),
    }


class CutoverConfig(BaseModel):
    """Primary database cutover settings."""

    retire_after: float = Field(
        default=60.0,
        ge=0.0,
        description="Seconds the previous pool stays open for in-flight cycles",
    )


class IndexerConfig(BaseModel):
    """Root configuration model of ``config/indexer.yaml``.

    ``pipelines`` and ``chainlogs`` stay raw dictionaries here; each
    pipeline validates its own section through its ``CONFIG_CLASS``.
    """

    pool: PoolConfig = Field(default_factory=PoolConfig)
    credentials: CredentialsConfig = Field(default_factory=CredentialsConfig)
    rate_limits: dict[Upstream, RateBudgetConfig] = Field(default_factory=_default_rate_limits)
    explorers: dict[int, str] = Field(default_factory=lambda: dict(DEFAULT_EXPLORER_ENDPOINTS))
    is_initializing_metadata: bool = Field(
        default=False,
        description="Treat the next metadata cycle as the initial full load",
    )
    cutover: CutoverConfig = Field(default_factory=CutoverConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    pipelines: dict[str, dict[str, Any]] = Field(default_factory=dict)
    chainlogs: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("rate_limits")
    @classmethod
    def fill_rate_limits(
        cls, v: dict[Upstream, RateBudgetConfig]
    ) -> dict[Upstream, RateBudgetConfig]:
        """Keep defaults for upstreams the file does not mention."""
        return {**_default_rate_limits(), **v}


# ---------------------------------------------------------------------------
# Store Connection
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StoreConnection:
    """The DSN and pool of the database all writes go to.

    Attributes:
        url: DSN the pool was built from (contains credentials, hidden
            from ``repr``).
        pool: Connected [Pool][chainindexer.core.pool.Pool].
    """

    url: str = field(repr=False)
    pool: Pool

    @property
    def redacted_url(self) -> str:
        return redact_dsn(self.url)


# ---------------------------------------------------------------------------
# Shared State
# ---------------------------------------------------------------------------


class AppConfig:
    """Shared mutable state behind one reader/writer lock.

    Examples:
        ```python
        state = AppConfig(StoreConnection(url, pool))
        pool = await state.pool()                 # reader lock
        await state.set_interval("forex", 900)   # writer lock
        ```

    See Also:
        [PrimaryStoreManager][chainindexer.core.store.PrimaryStoreManager]:
            The only caller of
            [swap_connection()][chainindexer.core.state.AppConfig.swap_connection].
        [SyncPipeline][chainindexer.services.common.pipeline.SyncPipeline]:
            Reads and publishes cursor positions.
    """

    def __init__(
        self,
        connection: StoreConnection,
        *,
        credentials: Mapping[Upstream, SecretStr | None] | None = None,
        limiters: Mapping[Upstream, RateLimiter] | None = None,
        explorer_endpoints: Mapping[int, str] | None = None,
        cursors: Mapping[str, int] | None = None,
        intervals: Mapping[str, float] | None = None,
        is_initializing_metadata: bool = False,
    ) -> None:
        self._lock = aiorwlock.RWLock()
        self._connection = connection
        self._credentials: dict[Upstream, SecretStr | None] = dict(credentials or {})
        self._limiters: dict[Upstream, RateLimiter] = dict(limiters or {})
        self._explorer_endpoints: dict[int, str] = dict(explorer_endpoints or {})
        self._cursors: dict[str, int] = dict(cursors or {})
        self._intervals: dict[str, float] = dict(intervals or {})
        self._is_initializing_metadata = is_initializing_metadata
        self._logger = Logger("state")

    @classmethod
    def from_config(cls, config: IndexerConfig, connection: StoreConnection) -> AppConfig:
        """Build the shared state from validated configuration and a connected store."""
        limiters = {
            upstream: RateLimiter(budget.capacity, budget.window, name=str(upstream))
            for upstream, budget in config.rate_limits.items()
        }
        return cls(
            connection,
            credentials=config.credentials.resolve(),
            limiters=limiters,
            explorer_endpoints=config.explorers,
            is_initializing_metadata=config.is_initializing_metadata,
        )

    # -------------------------------------------------------------------------
    # Store Connection
    # -------------------------------------------------------------------------

    async def pool(self) -> Pool:
        """The active pool. Read it per unit of work, never cache it across cycles."""
        async with self._lock.reader_lock:
            return self._connection.pool

    async def swap_connection(self, connection: StoreConnection) -> StoreConnection:
        """Replace the active connection and return the previous one.

        The candidate must already be validated; this only publishes it.
        """
        async with self._lock.writer_lock:
            previous, self._connection = self._connection, connection
        self._logger.info(
            "connection_swapped",
            previous=previous.redacted_url,
            active=connection.redacted_url,
        )
        return previous

    # -------------------------------------------------------------------------
    # Credentials and Rate Limiters
    # -------------------------------------------------------------------------

    async def credential(self, upstream: Upstream) -> str:
        """Return the API key for *upstream*.

        Raises:
            ConfigurationError: If no key is configured.
        """
        async with self._lock.reader_lock:
            secret = self._credentials.get(upstream)
        if secret is None:
            raise ConfigurationError(f"no API key configured for {upstream}")
        return secret.get_secret_value()

    async def set_credential(self, upstream: Upstream, value: str) -> None:
        """Rotate the API key for *upstream*."""
        if not value.strip():
            raise ConfigurationError(f"API key for {upstream} must not be empty")
        async with self._lock.writer_lock:
            self._credentials[upstream] = SecretStr(value.strip())
        self._logger.info("credential_rotated", upstream=upstream)

    def require_credentials(self, upstreams: Iterable[Upstream]) -> None:
        """Fail fast at startup when an enabled pipeline lacks its key.

        Called before any task starts, so the lock is not needed.

        Raises:
            ConfigurationError: Naming every missing upstream key.
        """
        missing = sorted({str(u) for u in upstreams if self._credentials.get(u) is None})
        if missing:
            raise ConfigurationError(f"missing API keys for: {', '.join(missing)}")

    def limiter(self, upstream: Upstream) -> RateLimiter | None:
        """The shared rate limiter for *upstream*, if one is configured."""
        return self._limiters.get(upstream)

    async def close(self) -> None:
        """Stop every limiter's refill task."""
        for limiter in self._limiters.values():
            await limiter.close()

    # -------------------------------------------------------------------------
    # Cursors
    # -------------------------------------------------------------------------

    async def cursor(self, stream_id: str) -> int:
        """Last published position of *stream_id* (``0`` if never set)."""
        async with self._lock.reader_lock:
            return self._cursors.get(stream_id, 0)

    async def set_cursor(self, stream_id: str, position: int) -> None:
        if position < 0:
            raise ValueError(f"cursor position must be non-negative, got {position}")
        async with self._lock.writer_lock:
            self._cursors[stream_id] = position

    async def load_cursors(self, cursors: Mapping[str, int]) -> None:
        """Seed positions read from the store at startup."""
        async with self._lock.writer_lock:
            self._cursors.update(cursors)

    # -------------------------------------------------------------------------
    # Intervals
    # -------------------------------------------------------------------------

    async def interval(self, pipeline: str, default: float) -> float:
        """Seconds to sleep after a cycle of *pipeline*."""
        async with self._lock.reader_lock:
            return self._intervals.get(pipeline, default)

    async def set_interval(self, pipeline: str, seconds: float) -> None:
        """Change a pipeline's interval; takes effect after its current cycle."""
        if seconds <= 0:
            raise ConfigurationError(f"interval must be positive, got {seconds}")
        async with self._lock.writer_lock:
            self._intervals[pipeline] = float(seconds)
        self._logger.info("interval_changed", pipeline=pipeline, interval_s=seconds)

    # -------------------------------------------------------------------------
    # Explorer Endpoints
    # -------------------------------------------------------------------------

    async def explorer_endpoints(self) -> dict[int, str]:
        """A snapshot copy of the chain id to explorer endpoint mapping."""
        async with self._lock.reader_lock:
            return dict(self._explorer_endpoints)

    async def add_explorer_endpoint(self, chainid: int, url: str) -> None:
        """Add or replace the explorer endpoint used for *chainid*."""
        async with self._lock.writer_lock:
            self._explorer_endpoints[chainid] = url.rstrip("/")
        self._logger.info("explorer_endpoint_added", chainid=chainid, url=url)

    # -------------------------------------------------------------------------
    # Metadata Initialization Flag
    # -------------------------------------------------------------------------

    async def is_initializing_metadata(self) -> bool:
        async with self._lock.reader_lock:
            return self._is_initializing_metadata

    async def set_initializing_metadata(self, value: bool) -> None:
        async with self._lock.writer_lock:
            self._is_initializing_metadata = value
