r"""chainindexer -- rate-limited upstream sync into PostgreSQL.

Long-running async pipelines pull token registries, metadata, market
snapshots, exchange rates and ERC-20 events from rate-limited HTTP APIs
and keep a PostgreSQL database current, surviving upstream outages and
live cutovers of the primary database.

Architecture follows a **diamond DAG** dependency structure where imports
flow strictly downward:

```text
              services         Pipelines and administrative commands
               /    \
            core    utils      Infrastructure and HTTP helpers
               \    /
              models           Pure frozen dataclasses (zero I/O)
```

Attributes:
    models: Pure frozen dataclasses and enumerations. Zero I/O.
    core: Pool, shared state, rate limiter, scheduler, cutover manager,
        base pipeline, exceptions, logging, metrics.
    utils: The retrying HTTP fetch client.
    services: Metadata, chain-log, market-data and forex pipelines.

Note:
    Top-level imports (``from chainindexer import Scheduler``) use lazy
    loading and resolve on first access.
"""

import importlib
from importlib.metadata import version as _get_version


__version__ = _get_version("chainindexer")

__all__ = [
    "AppConfig",
    "BasePipeline",
    "ChainLogSync",
    "ForexSync",
    "IndexerConfig",
    "Logger",
    "MarketDataSync",
    "MetadataPipeline",
    "Pool",
    "PrimaryStoreManager",
    "RateLimiter",
    "Scheduler",
    "SyncPipeline",
    "fetch_with_retry",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "AppConfig": ("chainindexer.core", "AppConfig"),
    "BasePipeline": ("chainindexer.core", "BasePipeline"),
    "IndexerConfig": ("chainindexer.core", "IndexerConfig"),
    "Logger": ("chainindexer.core", "Logger"),
    "Pool": ("chainindexer.core", "Pool"),
    "PrimaryStoreManager": ("chainindexer.core", "PrimaryStoreManager"),
    "RateLimiter": ("chainindexer.core", "RateLimiter"),
    "Scheduler": ("chainindexer.core", "Scheduler"),
    "fetch_with_retry": ("chainindexer.utils.http", "fetch_with_retry"),
    "SyncPipeline": ("chainindexer.services.common.pipeline", "SyncPipeline"),
    "ChainLogSync": ("chainindexer.services", "ChainLogSync"),
    "ForexSync": ("chainindexer.services", "ForexSync"),
    "MarketDataSync": ("chainindexer.services", "MarketDataSync"),
    "MetadataPipeline": ("chainindexer.services", "MetadataPipeline"),
}


def __getattr__(name: str) -> object:
    if name in _LAZY_IMPORTS:
        module_path, attr_name = _LAZY_IMPORTS[name]
        module = importlib.import_module(module_path)
        value = getattr(module, attr_name)
        globals()[name] = value  # Cache for subsequent access
        return value
    raise AttributeError(f"module 'chainindexer' has no attribute {name!r}")


def __dir__() -> list[str]:
    return __all__
