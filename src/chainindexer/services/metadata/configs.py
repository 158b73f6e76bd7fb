"""Metadata pipeline configuration models.

See Also:
    [MetadataPipeline][chainindexer.services.metadata.MetadataPipeline]: The
        composite pipeline that consumes these configurations.
    [SyncConfig][chainindexer.services.common.configs.SyncConfig]: Base of
        the cursor-driven steps.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from chainindexer.core.base_pipeline import BasePipelineConfig
from chainindexer.services.common.configs import FetchConfig, FetchingPipelineConfig, SyncConfig


class CoinGeckoConfig(BaseModel):
    """Where and how the market-data registry API is called.

    The API key itself is never configured here; it comes from the
    environment through
    [CredentialsConfig][chainindexer.core.state.CredentialsConfig].
    """

    base_url: str = Field(
        default="https://api.coingecko.com/api/v3",
        description="API root without trailing slash",
    )
    api_key_header: str = Field(default="x-cg-demo-api-key", min_length=1)


class TokenMapSyncConfig(FetchingPipelineConfig):
    """Refresh of ``tokenmap`` from ``coins/list?include_platform=true``."""

    coingecko: CoinGeckoConfig = Field(default_factory=CoinGeckoConfig)


class NftMapSyncConfig(FetchingPipelineConfig):
    """Refresh of ``nftmap`` from the paginated ``nfts/list``."""

    coingecko: CoinGeckoConfig = Field(default_factory=CoinGeckoConfig)
    per_page: int = Field(default=250, ge=1, le=250)
    max_pages: int = Field(default=1000, ge=1, description="Safety bound on pagination")


class MetadataSyncConfig(SyncConfig):
    """Cursor-driven token or NFT metadata sync."""

    coingecko: CoinGeckoConfig = Field(default_factory=CoinGeckoConfig)


class VerificationSyncConfig(FetchingPipelineConfig):
    """Explorer verification enrichment of stored metadata rows."""

    batch_size: int = Field(
        default=500,
        ge=1,
        le=10_000,
        description="Rows checked per cycle",
    )
    fetch_abi: bool = Field(default=True, description="Fetch the ABI of verified contracts")


class MetadataConfig(BasePipelineConfig):
    """Composite daily metadata pipeline.

    Step sections accept the same keys as their standalone configs. A
    step whose section is omitted inherits ``fetch``, ``coingecko`` and
    ``metrics`` from this level.

    Examples:
        ```yaml
        pipelines:
          metadata:
            interval: 86400
            token_metadata:
              max_consecutive_failures: 2
            verification:
              batch_size: 200
        ```
    """

    fetch: FetchConfig = Field(default_factory=FetchConfig)
    coingecko: CoinGeckoConfig = Field(default_factory=CoinGeckoConfig)
    token_map: TokenMapSyncConfig | None = None
    nft_map: NftMapSyncConfig | None = None
    token_metadata: MetadataSyncConfig | None = None
    nft_metadata: MetadataSyncConfig | None = None
    verification: VerificationSyncConfig | None = None
