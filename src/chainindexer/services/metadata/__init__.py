"""Metadata pipeline package.

Registry maps (``tokenmap`` / ``nftmap``), their cursor-driven metadata
enrichment, and explorer verification, run as one composite daily cycle.

See Also:
    [MetadataPipeline][chainindexer.services.metadata.MetadataPipeline]:
        The composite pipeline.
    [MetadataConfig][chainindexer.services.metadata.MetadataConfig]:
        Its configuration.
"""

from .configs import (
    CoinGeckoConfig,
    MetadataConfig,
    MetadataSyncConfig,
    NftMapSyncConfig,
    TokenMapSyncConfig,
    VerificationSyncConfig,
)
from .service import (
    ExplorerVerificationSync,
    MetadataPipeline,
    NftMapSync,
    NftMetadataSync,
    TokenMapSync,
    TokenMetadataSync,
)


__all__ = [
    "CoinGeckoConfig",
    "ExplorerVerificationSync",
    "MetadataConfig",
    "MetadataPipeline",
    "MetadataSyncConfig",
    "NftMapSync",
    "NftMapSyncConfig",
    "NftMetadataSync",
    "TokenMapSync",
    "TokenMapSyncConfig",
    "TokenMetadataSync",
    "VerificationSyncConfig",
]
