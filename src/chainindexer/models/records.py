"""Records written to and read from the destination tables.

Every record that is upserted carries a natural key (``key``) used for
idempotent writes: ``(address, chainid)`` for contract metadata and
``(tx_hash, log_index)`` for decoded chain logs. Work items read from the
store (``MapEntry``) or listed from an explorer (``BlockLogs``) expose an
integer ``id`` that orders the stream a cursor walks.

Database parameter containers are ``NamedTuple``s whose field order is the
column order of the matching ``INSERT`` in
[queries][chainindexer.services.common.queries].
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, NamedTuple

from ._validation import (
    normalize_address,
    normalize_tx_hash,
    validate_non_negative_int,
    validate_optional_str,
    validate_positive_int,
    validate_str_not_empty,
)


class MapKind(StrEnum):
    """Which registry map a [MapEntry][chainindexer.models.records.MapEntry] came from."""

    TOKEN = "token"
    NFT = "nft"


# ---------------------------------------------------------------------------
# Registry maps (tokenmap / nftmap)
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class MapEntry:
    """One ``tokenmap`` or ``nftmap`` row: a registry id deployed on a chain.

    Attributes:
        id: Row id; the position a metadata cursor walks.
        kind: Token or NFT registry.
        external_id: Registry id used to query the market-data API.
        symbol: Registry symbol (may be empty for sparse NFT listings).
        name: Registry display name.
        chainid: EVM chain id.
        address: Lowercase contract address.
    """

    id: int
    kind: MapKind
    external_id: str
    symbol: str
    name: str
    chainid: int
    address: str

    def __post_init__(self) -> None:
        validate_positive_int(self.id, "id")
        validate_str_not_empty(self.external_id, "external_id")
        validate_optional_str(self.symbol, "symbol")
        validate_optional_str(self.name, "name")
        validate_positive_int(self.chainid, "chainid")
        object.__setattr__(self, "kind", MapKind(self.kind))
        object.__setattr__(self, "address", normalize_address(self.address))

    @property
    def key(self) -> tuple[str, int]:
        """Natural key shared with the ``metadata`` table."""
        return (self.address, self.chainid)


class MapListing(NamedTuple):
    """A registry listing before it has a row id, in ``tokenmap``/``nftmap`` column order."""

    external_id: str
    symbol: str
    name: str
    chainid: int
    address: str


# ---------------------------------------------------------------------------
# Contract metadata
# ---------------------------------------------------------------------------


class TokenMetadataDbParams(NamedTuple):
    """Column-ordered parameters for the ``metadata`` coalesce upsert."""

    tokenid: str | None
    nftid: str | None
    symbol: str
    name: str
    decimals: int | None
    homepage: str | None
    image: str | None
    description: str | None
    notices: Any
    chainid: int
    address: str


@dataclass(frozen=True, slots=True)
class TokenMetadata:
    """Descriptive metadata of a token or NFT contract.

    ``symbol`` and ``name`` are required; every other field is optional
    and is filled by a later pass when missing. Writes never replace a
    known value with ``None``.
    """

    chainid: int
    address: str
    symbol: str
    name: str
    tokenid: str | None = None
    nftid: str | None = None
    decimals: int | None = None
    homepage: str | None = None
    image: str | None = None
    description: str | None = None
    notices: Any = None

    def __post_init__(self) -> None:
        validate_positive_int(self.chainid, "chainid")
        validate_str_not_empty(self.symbol, "symbol")
        validate_str_not_empty(self.name, "name")
        for name in ("tokenid", "nftid", "homepage", "image", "description"):
            validate_optional_str(getattr(self, name), name)
        if self.decimals is not None:
            validate_non_negative_int(self.decimals, "decimals")
        object.__setattr__(self, "address", normalize_address(self.address))

    @property
    def key(self) -> tuple[str, int]:
        return (self.address, self.chainid)

    def to_db_params(self) -> TokenMetadataDbParams:
        return TokenMetadataDbParams(
            tokenid=self.tokenid,
            nftid=self.nftid,
            symbol=self.symbol,
            name=self.name,
            decimals=self.decimals,
            homepage=self.homepage,
            image=self.image,
            description=self.description,
            notices=self.notices,
            chainid=self.chainid,
            address=self.address,
        )


@dataclass(frozen=True, slots=True)
class ContractVerification:
    """Verification details reported by a contract explorer."""

    chainid: int
    address: str
    is_verified: bool | None = None
    risk_level: str | None = None
    abi: Any = None

    def __post_init__(self) -> None:
        validate_positive_int(self.chainid, "chainid")
        validate_optional_str(self.risk_level, "risk_level")
        object.__setattr__(self, "address", normalize_address(self.address))

    @property
    def key(self) -> tuple[str, int]:
        return (self.address, self.chainid)


# ---------------------------------------------------------------------------
# Chain logs
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RawLog:
    """An undecoded EVM log as returned by an explorer ``getLogs`` call."""

    address: str
    topics: tuple[str, ...]
    data: str
    block_number: int
    tx_hash: str
    log_index: int

    def __post_init__(self) -> None:
        validate_non_negative_int(self.block_number, "block_number")
        validate_non_negative_int(self.log_index, "log_index")
        object.__setattr__(self, "address", normalize_address(self.address))
        object.__setattr__(self, "tx_hash", normalize_tx_hash(self.tx_hash))
        object.__setattr__(self, "topics", tuple(t.lower() for t in self.topics))

    @property
    def key(self) -> tuple[str, int]:
        return (self.tx_hash, self.log_index)


@dataclass(frozen=True, slots=True)
class BlockLogs:
    """All logs of one block: the work item a chain-log cursor walks.

    Attributes:
        id: Block number.
        logs: Logs of the block in ``log_index`` order.
    """

    id: int
    logs: tuple[RawLog, ...]

    def __post_init__(self) -> None:
        validate_non_negative_int(self.id, "id")
        for log in self.logs:
            if log.block_number != self.id:
                raise ValueError(f"log {log.key} belongs to block {log.block_number}, not {self.id}")
        object.__setattr__(self, "logs", tuple(sorted(self.logs, key=lambda log: log.log_index)))

    @property
    def keys(self) -> frozenset[tuple[str, int]]:
        return frozenset(log.key for log in self.logs)


class LogEventDbParams(NamedTuple):
    """Column-ordered parameters for the ``log_events`` insert."""

    tx_hash: str
    log_index: int
    chainid: int
    block_number: int
    block_timestamp: int
    contract_address: str
    event_name: str
    from_address: str
    to_address: str
    value: str


@dataclass(frozen=True, slots=True)
class LogEvent:
    """A decoded ERC-20 ``Transfer`` or ``Approval`` event.

    For approvals ``from_address`` is the owner and ``to_address`` the
    spender. ``value`` is stored as text in a ``NUMERIC`` column since it
    can exceed 64 bits.
    """

    chainid: int
    block_number: int
    block_timestamp: int
    tx_hash: str
    log_index: int
    contract_address: str
    event_name: str
    from_address: str
    to_address: str
    value: int

    def __post_init__(self) -> None:
        validate_positive_int(self.chainid, "chainid")
        validate_non_negative_int(self.block_number, "block_number")
        validate_non_negative_int(self.block_timestamp, "block_timestamp")
        validate_non_negative_int(self.log_index, "log_index")
        validate_non_negative_int(self.value, "value")
        validate_str_not_empty(self.event_name, "event_name")
        object.__setattr__(self, "tx_hash", normalize_tx_hash(self.tx_hash))
        object.__setattr__(self, "contract_address", normalize_address(self.contract_address))
        object.__setattr__(self, "from_address", normalize_address(self.from_address))
        object.__setattr__(self, "to_address", normalize_address(self.to_address))

    @property
    def key(self) -> tuple[str, int]:
        return (self.tx_hash, self.log_index)

    def to_db_params(self) -> LogEventDbParams:
        return LogEventDbParams(
            tx_hash=self.tx_hash,
            log_index=self.log_index,
            chainid=self.chainid,
            block_number=self.block_number,
            block_timestamp=self.block_timestamp,
            contract_address=self.contract_address,
            event_name=self.event_name,
            from_address=self.from_address,
            to_address=self.to_address,
            value=str(self.value),
        )


# ---------------------------------------------------------------------------
# Market snapshot
# ---------------------------------------------------------------------------


class MarketTicker(NamedTuple):
    """One ``coins/markets`` row, in ``marketdata`` column order."""

    token_id: str
    symbol: str
    name: str
    image: str | None
    current_price: float | None
    market_cap: float | None
    market_cap_rank: int | None
    fully_diluted_valuation: float | None
    total_volume: float | None
    price_change_24h: float | None
    price_change_percentage_24h: float | None
    circulating_supply: float | None
    total_supply: float | None
    max_supply: float | None
    ath: float | None
    ath_date: str | None
    atl: float | None
    atl_date: str | None
    last_updated: str | None
