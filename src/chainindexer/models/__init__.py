"""Pure data containers with zero I/O.

Everything in this package is a frozen dataclass, ``NamedTuple`` or enum
that depends only on the standard library. The ``core``, ``utils`` and
``services`` layers all import from here; nothing here imports from them.
"""

from .constants import (
    DEFAULT_CHAINS,
    PipelineName,
    StreamName,
    Upstream,
    chain_log_pipeline,
    chain_log_stream,
)
from .cursor import SyncCursor, SyncCursorDbParams
from .fetch import FetchEmpty, FetchFailed, FetchOutcome, FetchSuccess
from .records import (
    BlockLogs,
    ContractVerification,
    LogEvent,
    LogEventDbParams,
    MapEntry,
    MapKind,
    MapListing,
    MarketTicker,
    RawLog,
    TokenMetadata,
    TokenMetadataDbParams,
)


__all__ = [
    "DEFAULT_CHAINS",
    "BlockLogs",
    "ContractVerification",
    "FetchEmpty",
    "FetchFailed",
    "FetchOutcome",
    "FetchSuccess",
    "LogEvent",
    "LogEventDbParams",
    "MapEntry",
    "MapKind",
    "MapListing",
    "MarketTicker",
    "PipelineName",
    "RawLog",
    "StreamName",
    "SyncCursor",
    "SyncCursorDbParams",
    "TokenMetadata",
    "TokenMetadataDbParams",
    "Upstream",
    "chain_log_pipeline",
    "chain_log_stream",
]
