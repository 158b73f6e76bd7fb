"""Pipeline implementations for chainindexer.

Each package follows the same layout: ``configs.py`` for the pydantic
models, ``service.py`` for the pipeline classes and ``utils.py`` for pure
payload helpers. Shared infrastructure lives in ``services.common``.

Attributes:
    MetadataPipeline: Daily token/NFT registry and metadata refresh.
        See [MetadataPipeline][chainindexer.services.metadata.MetadataPipeline].
    ChainLogSync: Block-cursor ERC-20 event sync of one chain.
        See [ChainLogSync][chainindexer.services.chainlogs.ChainLogSync].
    MarketDataSync: Daily ``marketdata`` snapshot replacement.
        See [MarketDataSync][chainindexer.services.marketdata.MarketDataSync].
    ForexSync: Exchange-rate refresh.
        See [ForexSync][chainindexer.services.forex.ForexSync].
"""

from .chainlogs import ChainLogConfig, ChainLogSync
from .forex import ForexConfig, ForexSync
from .marketdata import MarketDataConfig, MarketDataSync
from .metadata import MetadataConfig, MetadataPipeline


__all__ = [
    "ChainLogConfig",
    "ChainLogSync",
    "ForexConfig",
    "ForexSync",
    "MarketDataConfig",
    "MarketDataSync",
    "MetadataConfig",
    "MetadataPipeline",
]
