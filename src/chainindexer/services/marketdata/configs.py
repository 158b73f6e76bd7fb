"""Market-data pipeline configuration models."""

from __future__ import annotations

from pydantic import Field

from chainindexer.services.common.configs import FetchingPipelineConfig
from chainindexer.services.metadata.configs import CoinGeckoConfig


class MarketDataConfig(FetchingPipelineConfig):
    """Daily replacement of the ``marketdata`` snapshot from ``coins/markets``.

    Examples:
        ```yaml
        pipelines:
          marketdata:
            interval: 86400
            vs_currency: usd
            max_pages: 40
        ```
    """

    coingecko: CoinGeckoConfig = Field(default_factory=CoinGeckoConfig)
    vs_currency: str = Field(default="usd", min_length=1)
    per_page: int = Field(default=250, ge=1, le=250)
    max_pages: int = Field(default=100, ge=1, description="Safety bound on pagination")
