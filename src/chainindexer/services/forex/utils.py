"""Forex payload parsing."""

from __future__ import annotations

from typing import Any, NamedTuple

from chainindexer.core.exceptions import ValidationError


class ForexSnapshot(NamedTuple):
    """One ``latest.json`` response reduced to what is stored."""

    base: str
    rates: dict[str, float]
    timestamp: int


def parse_latest_rates(payload: Any) -> ForexSnapshot:
    """Extract base currency, rates and timestamp.

    Non-numeric rates are dropped.

    Raises:
        ValidationError: If ``base``, ``timestamp`` or a non-empty
            ``rates`` object is missing.
    """
    if not isinstance(payload, dict):
        raise ValidationError("latest.json: expected an object")
    base = payload.get("base")
    timestamp = payload.get("timestamp")
    rates = payload.get("rates")
    if not isinstance(base, str) or not base:
        raise ValidationError("latest.json: missing base")
    if not isinstance(timestamp, int) or isinstance(timestamp, bool) or timestamp < 0:
        raise ValidationError("latest.json: missing timestamp")
    if not isinstance(rates, dict):
        raise ValidationError("latest.json: missing rates")
    numeric = {
        str(code): float(rate)
        for code, rate in rates.items()
        if isinstance(rate, int | float) and not isinstance(rate, bool)
    }
    if not numeric:
        raise ValidationError("latest.json: no numeric rates")
    return ForexSnapshot(base.upper(), numeric, timestamp)
