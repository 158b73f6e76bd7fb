"""Forex pipeline package."""

from .configs import ForexConfig
from .service import ForexSync
from .utils import ForexSnapshot, parse_latest_rates


__all__ = ["ForexConfig", "ForexSnapshot", "ForexSync", "parse_latest_rates"]
