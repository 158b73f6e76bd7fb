"""Market-data pipeline for chainindexer.

Pages through ``coins/markets`` until an empty page and replaces the whole
``marketdata`` table with the result in one transaction. A failed page
aborts the cycle before anything is written, so readers always see a
complete snapshot.

See Also:
    [MarketDataConfig][chainindexer.services.marketdata.MarketDataConfig]:
        Configuration model for this pipeline.
    [replace_marketdata()][chainindexer.services.common.queries.replace_marketdata]:
        The atomic replacement.
"""

from __future__ import annotations

from typing import ClassVar

import aiohttp

from chainindexer.core.exceptions import TransportError
from chainindexer.models.constants import PipelineName, Upstream
from chainindexer.models.fetch import FetchEmpty, FetchFailed
from chainindexer.models.records import MarketTicker
from chainindexer.services.common.pipeline import FetchingPipeline
from chainindexer.services.common.queries import replace_marketdata
from chainindexer.services.metadata.service import coingecko_request

from .configs import MarketDataConfig
from .utils import parse_market_page


class MarketDataSync(FetchingPipeline[MarketDataConfig]):
    """Snapshot replacement of ``marketdata``."""

    PIPELINE_NAME: ClassVar[str] = PipelineName.MARKETDATA
    CONFIG_CLASS: ClassVar[type[MarketDataConfig]] = MarketDataConfig
    UPSTREAM: ClassVar[Upstream] = Upstream.COINGECKO

    async def run(self) -> None:
        async with aiohttp.ClientSession() as session:
            await self.sync(session)

    async def sync(self, session: aiohttp.ClientSession) -> int:
        """Fetch every page and replace the snapshot.

        Returns:
            Number of rows in the new snapshot.

        Raises:
            TransportError: If a page could not be fetched. The previous
                snapshot is kept.
        """
        c = self._config
        api_key = await self._state.credential(self.UPSTREAM)
        tickers: list[MarketTicker] = []
        pages = 0
        for page in range(1, c.max_pages + 1):
            params = {"vs_currency": c.vs_currency, "per_page": str(c.per_page), "page": str(page)}
            outcome = await self._fetch(
                session,
                f"{c.coingecko.base_url}/coins/markets",
                coingecko_request(c.coingecko, api_key, params),
            )
            if isinstance(outcome, FetchFailed):
                raise TransportError(f"coins/markets page {page}: {outcome.reason}")
            if isinstance(outcome, FetchEmpty):
                break
            pages += 1
            tickers.extend(parse_market_page(outcome.payload))
        else:
            self._logger.warning("market_page_limit", max_pages=c.max_pages)

        if not tickers:
            self._logger.warning("marketdata_empty", pages=pages)
            return 0

        pool = await self._state.pool()
        written = await replace_marketdata(pool, tickers)
        self.set_gauge("rows", written)
        self._logger.info("marketdata_replaced", pages=pages, rows=written)
        return written
