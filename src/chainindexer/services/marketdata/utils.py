"""Market-data payload parsing."""

from __future__ import annotations

import logging
from typing import Any

from chainindexer.models.records import MarketTicker


logger = logging.getLogger(__name__)


def _float_or_none(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _text_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def parse_market_page(payload: Any) -> list[MarketTicker]:
    """Tickers of one ``coins/markets`` page.

    Entries without ``id``, ``symbol`` or ``name`` are skipped; any other
    field of the wrong type is stored as ``NULL``.
    """
    tickers: list[MarketTicker] = []
    if not isinstance(payload, list):
        logger.warning("Unexpected markets payload type: %s", type(payload).__name__)
        return tickers
    for coin in payload:
        if not isinstance(coin, dict):
            continue
        token_id, symbol, name = (_text_or_none(coin.get(k)) for k in ("id", "symbol", "name"))
        if token_id is None or symbol is None or name is None:
            logger.debug("Skipping market entry without id/symbol/name: %s", coin.get("id"))
            continue
        tickers.append(
            MarketTicker(
                token_id=token_id,
                symbol=symbol,
                name=name,
                image=_text_or_none(coin.get("image")),
                current_price=_float_or_none(coin.get("current_price")),
                market_cap=_float_or_none(coin.get("market_cap")),
                market_cap_rank=_int_or_none(coin.get("market_cap_rank")),
                fully_diluted_valuation=_float_or_none(coin.get("fully_diluted_valuation")),
                total_volume=_float_or_none(coin.get("total_volume")),
                price_change_24h=_float_or_none(coin.get("price_change_24h")),
                price_change_percentage_24h=_float_or_none(coin.get("price_change_percentage_24h")),
                circulating_supply=_float_or_none(coin.get("circulating_supply")),
                total_supply=_float_or_none(coin.get("total_supply")),
                max_supply=_float_or_none(coin.get("max_supply")),
                ath=_float_or_none(coin.get("ath")),
                ath_date=_text_or_none(coin.get("ath_date")),
                atl=_float_or_none(coin.get("atl")),
                atl_date=_text_or_none(coin.get("atl_date")),
                last_updated=_text_or_none(coin.get("last_updated")),
            )
        )
    return tickers
