"""Market-data pipeline package.

See Also:
    [MarketDataSync][chainindexer.services.marketdata.MarketDataSync]: The
        daily snapshot replacement.
"""

from .configs import MarketDataConfig
from .service import MarketDataSync


__all__ = ["MarketDataConfig", "MarketDataSync"]
