"""Chain-log pipeline package.

See Also:
    [ChainLogSync][chainindexer.services.chainlogs.ChainLogSync]: One
        chain's block-cursor event sync.
"""

from .configs import ChainLogConfig
from .service import ChainLogSync
from .utils import APPROVAL_TOPIC, TRANSFER_TOPIC, Erc20EventDecoder, LogDecoder


__all__ = [
    "APPROVAL_TOPIC",
    "TRANSFER_TOPIC",
    "ChainLogConfig",
    "ChainLogSync",
    "Erc20EventDecoder",
    "LogDecoder",
]
