"""Core layer providing the foundation for all chainindexer pipelines.

Sits in the middle of the diamond DAG -- depends only on
``chainindexer.models`` and is depended upon by ``chainindexer.services``.

Attributes:
    Pool: Async PostgreSQL connection pool with retry/backoff.
        See [Pool][chainindexer.core.pool.Pool].
    AppConfig: Shared mutable state (active store connection, credentials,
        cursors, intervals) behind one reader/writer lock.
        See [AppConfig][chainindexer.core.state.AppConfig].
    RateLimiter: Token bucket with minimum spacing between grants.
        See [RateLimiter][chainindexer.core.ratelimit.RateLimiter].
    PrimaryStoreManager: Validated live cutover of the primary database.
        See [PrimaryStoreManager][chainindexer.core.store.PrimaryStoreManager].
    BasePipeline: Abstract generic base class with typed config, factory
        methods ([from_yaml()][chainindexer.core.base_pipeline.BasePipeline.from_yaml],
        [from_dict()][chainindexer.core.base_pipeline.BasePipeline.from_dict])
        and Prometheus metric helpers.
    Scheduler: Runs every registered pipeline as its own endless loop.
        See [Scheduler][chainindexer.core.scheduler.Scheduler].
    Logger: Structured logger supporting key=value and JSON output modes.
        See [Logger][chainindexer.core.logger.Logger].
    MetricsServer: Prometheus ``/metrics`` HTTP endpoint.
        See [MetricsServer][chainindexer.core.metrics.MetricsServer].
    YAML: Safe YAML loading with ``yaml.safe_load()``.
        See [load_yaml()][chainindexer.core.yaml.load_yaml].

Examples:
    ```python
    from chainindexer.core import AppConfig, IndexerConfig, Pool, Scheduler, StoreConnection, load_yaml

    pool = Pool(IndexerConfig(**load_yaml("config/indexer.yaml")).pool)
    await pool.connect()
    state = AppConfig(StoreConnection(pool.url, pool))
    scheduler = Scheduler(state)
    ```

See Also:
    [chainindexer.models][chainindexer.models]: Pure dataclass models consumed
        by this layer.
    [chainindexer.services][chainindexer.services]: Pipelines that depend on
        this layer.
"""

from .base_pipeline import BasePipeline, BasePipelineConfig, ConfigT
from .exceptions import (
    ChainIndexerError,
    ConfigurationError,
    ConnectionPoolError,
    CutoverValidationError,
    DatabaseError,
    PersistenceError,
    SyncAbortedError,
    TransportError,
    ValidationError,
)
from .logger import Logger, StructuredFormatter, format_kv_pairs
from .metrics import (
    CYCLE_DURATION_SECONDS,
    PIPELINE_COUNTER,
    PIPELINE_GAUGE,
    PIPELINE_INFO,
    MetricsConfig,
    MetricsServer,
    start_metrics_server,
)
from .pool import (
    DatabaseConfig,
    Pool,
    PoolConfig,
    PoolLimitsConfig,
    PoolRetryConfig,
    PoolTimeoutsConfig,
    ServerSettingsConfig,
)
from .ratelimit import RateLimiter
from .scheduler import Scheduler
from .state import AppConfig, IndexerConfig, StoreConnection
from .store import PrimaryStoreManager
from .yaml import load_yaml


__all__ = [
    "CYCLE_DURATION_SECONDS",
    "PIPELINE_COUNTER",
    "PIPELINE_GAUGE",
    "PIPELINE_INFO",
    "AppConfig",
    "BasePipeline",
    "BasePipelineConfig",
    "ChainIndexerError",
    "ConfigT",
    "ConfigurationError",
    "ConnectionPoolError",
    "CutoverValidationError",
    "DatabaseConfig",
    "DatabaseError",
    "IndexerConfig",
    "Logger",
    "MetricsConfig",
    "MetricsServer",
    "PersistenceError",
    "Pool",
    "PoolConfig",
    "PoolLimitsConfig",
    "PoolRetryConfig",
    "PoolTimeoutsConfig",
    "PrimaryStoreManager",
    "RateLimiter",
    "Scheduler",
    "ServerSettingsConfig",
    "StoreConnection",
    "StructuredFormatter",
    "SyncAbortedError",
    "TransportError",
    "ValidationError",
    "format_kv_pairs",
    "load_yaml",
    "start_metrics_server",
]
