"""Shared constants for the models layer.

Defines the enumerations used to name pipelines, cursor streams, and
upstream rate budgets. Placing them here keeps the ``core`` and
``services`` layers free of string literals for these identifiers.

See Also:
    [SyncCursor][chainindexer.models.cursor.SyncCursor]: Keyed by a
        [StreamName][chainindexer.models.constants.StreamName] or a
        chain-log stream id built by
        [chain_log_stream()][chainindexer.models.constants.chain_log_stream].
"""

from __future__ import annotations

from enum import StrEnum


class PipelineName(StrEnum):
    """Names of the pipelines the scheduler knows how to build.

    Chain-log pipelines are registered once per configured chain under
    ``chainlogs_<chainid>`` and therefore have no fixed member here.

    Attributes:
        METADATA: Daily token/NFT registry and metadata pipeline.
        MARKETDATA: Daily market snapshot replacement.
        FOREX: Exchange-rate refresh on a runtime-tunable interval.
    """

    METADATA = "metadata"
    MARKETDATA = "marketdata"
    FOREX = "forex"


class StreamName(StrEnum):
    """Cursor stream identifiers persisted in the ``sync_cursor`` table.

    Attributes:
        TOKEN_METADATA: Walks ``tokenmap`` row ids.
        NFT_METADATA: Walks ``nftmap`` row ids.
    """

    TOKEN_METADATA = "token_metadata"
    NFT_METADATA = "nft_metadata"


class Upstream(StrEnum):
    """Named upstream services, each with its own rate budget.

    Attributes:
        COINGECKO: Market-data and token/NFT registry API.
        EXPLORER: Contract-verification and log explorer (Blockscout).
        OPENEXCHANGERATES: Fiat exchange-rate API.
    """

    COINGECKO = "coingecko"
    EXPLORER = "explorer"
    OPENEXCHANGERATES = "openexchangerates"


def chain_log_stream(chainid: int) -> str:
    """Return the cursor stream id of the chain-log pipeline for *chainid*."""
    return f"chainlogs:{chainid}"


def chain_log_pipeline(chainid: int) -> str:
    """Return the scheduler name of the chain-log pipeline for *chainid*."""
    return f"chainlogs_{chainid}"


# Chains seeded into the ``chains`` table on first start, keyed by the
# platform id the market-data API uses for them.
DEFAULT_CHAINS: tuple[tuple[int, str], ...] = (
    (1, "ethereum"),
    (56, "binance-smart-chain"),
    (8453, "base"),
    (42161, "arbitrum-one"),
    (59144, "linea"),
)
