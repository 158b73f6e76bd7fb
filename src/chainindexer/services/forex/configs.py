"""Forex pipeline configuration models."""

from __future__ import annotations

from pydantic import Field

from chainindexer.services.common.configs import FetchingPipelineConfig


class ForexConfig(FetchingPipelineConfig):
    """Exchange-rate refresh from OpenExchangeRates ``latest.json``.

    The interval is only the starting value; administrators can change it
    at runtime through
    [set_interval()][chainindexer.services.admin.set_interval].
    """

    interval: float = Field(default=3600.0, gt=0.0, description="Seconds to sleep between cycles")
    base_url: str = Field(default="https://openexchangerates.org/api", min_length=1)
