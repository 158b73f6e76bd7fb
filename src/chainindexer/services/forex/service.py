"""Forex pipeline for chainindexer.

Fetches the latest exchange rates and replaces the ``forex_rates`` row in
one transaction. When the upstream cannot be reached the stored rates are
kept as they are and the cycle only logs the failure; the next attempt
comes after the (runtime-tunable) interval.
"""

from __future__ import annotations

from typing import ClassVar

import aiohttp

from chainindexer.core.exceptions import ValidationError
from chainindexer.models.constants import PipelineName, Upstream
from chainindexer.models.fetch import FetchEmpty, FetchFailed
from chainindexer.services.common.pipeline import FetchingPipeline
from chainindexer.services.common.queries import replace_forex_rates
from chainindexer.utils.http import RequestCustomizer, RequestOptions

from .configs import ForexConfig
from .utils import ForexSnapshot, parse_latest_rates


def _app_id(api_key: str) -> RequestCustomizer:
    # Added as a query parameter so the key never appears in the logged URL
    def customize(options: RequestOptions) -> None:
        options.params["app_id"] = api_key

    return customize


class ForexSync(FetchingPipeline[ForexConfig]):
    """Replace the stored exchange rates with the latest ones."""

    PIPELINE_NAME: ClassVar[str] = PipelineName.FOREX
    CONFIG_CLASS: ClassVar[type[ForexConfig]] = ForexConfig
    UPSTREAM: ClassVar[Upstream] = Upstream.OPENEXCHANGERATES

    async def run(self) -> None:
        async with aiohttp.ClientSession() as session:
            await self.sync(session)

    async def sync(self, session: aiohttp.ClientSession) -> ForexSnapshot | None:
        """Fetch and store the latest rates.

        Returns:
            The stored snapshot, or ``None`` when the previous rates were kept.
        """
        api_key = await self._state.credential(self.UPSTREAM)
        outcome = await self._fetch(session, f"{self._config.base_url}/latest.json", _app_id(api_key))
        if isinstance(outcome, FetchFailed):
            self.inc_counter("fetch_failed")
            self._logger.warning("forex_fetch_failed", reason=outcome.reason)
            return None
        if isinstance(outcome, FetchEmpty):
            self._logger.warning("forex_empty")
            return None

        try:
            snapshot = parse_latest_rates(outcome.payload)
        except ValidationError as e:
            self.inc_counter("invalid")
            self._logger.warning("forex_invalid", error=str(e))
            return None

        pool = await self._state.pool()
        await replace_forex_rates(pool, snapshot.base, snapshot.rates, snapshot.timestamp)
        self.set_gauge("rates", len(snapshot.rates))
        self._logger.info("forex_replaced", base=snapshot.base, rates=len(snapshot.rates), timestamp=snapshot.timestamp)
        return snapshot
