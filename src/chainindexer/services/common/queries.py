"""Domain-specific database queries for chainindexer pipelines.

All SQL used by pipelines and administrative commands is centralized here.
Each function accepts the active [Pool][chainindexer.core.pool.Pool] (read
from [AppConfig][chainindexer.core.state.AppConfig] by the caller at the
start of its unit of work) and returns typed results.

The query functions are grouped into six categories:

- **Cursor queries**: ``get_cursor``, ``upsert_cursor``, ``fetch_all_cursors``
- **Chain queries**: ``fetch_chains``, ``add_chain``, ``seed_default_chains``
- **Registry map queries**: ``fetch_map_beyond``, ``insert_map_listings``,
  ``fetch_existing_metadata_keys``
- **Metadata queries**: ``upsert_metadata``,
  ``fetch_metadata_missing_verification``, ``update_metadata_verification``
- **Chain-log queries**: ``fetch_log_keys_beyond``, ``insert_log_events``
- **Snapshot queries**: ``replace_marketdata``, ``replace_forex_rates``,
  plus ``initialize_schema``

Warning:
    Enrichment columns are only ever written through ``COALESCE(existing,
    incoming)``, so a later pass can fill a ``NULL`` but never erase a
    known value. Re-running any write with identical data changes nothing
    but ``updated_at``.

See Also:
    [Pool][chainindexer.core.pool.Pool]: Provides ``fetch()``,
        ``fetchrow()``, ``fetchval()``, ``execute()``, ``executemany()``
        and ``transaction()``.
"""

from __future__ import annotations

import logging
from importlib import resources
from typing import TYPE_CHECKING, Any

from chainindexer.models.constants import DEFAULT_CHAINS
from chainindexer.models.cursor import SyncCursor
from chainindexer.models.records import MapEntry, MapKind


if TYPE_CHECKING:
    from chainindexer.core.pool import Pool
    from chainindexer.models.records import (
        ContractVerification,
        LogEvent,
        MapListing,
        MarketTicker,
        TokenMetadata,
    )

logger = logging.getLogger(__name__)

_MAP_TABLES: dict[MapKind, tuple[str, str]] = {
    MapKind.TOKEN: ("tokenmap", "tokenid"),
    MapKind.NFT: ("nftmap", "nftid"),
}

_MARKETDATA_COLUMNS = (
    "token_id",
    "symbol",
    "name",
    "image",
    "current_price",
    "market_cap",
    "market_cap_rank",
    "fully_diluted_valuation",
    "total_volume",
    "price_change_24h",
    "price_change_percentage_24h",
    "circulating_supply",
    "total_supply",
    "max_supply",
    "ath",
    "ath_date",
    "atl",
    "atl_date",
    "last_updated",
)


# =============================================================================
# Cursor queries
# =============================================================================


async def get_cursor(pool: Pool, stream_id: str) -> SyncCursor | None:
    """Load the persisted cursor of *stream_id*, or ``None`` if it was never written."""
    row = await pool.fetchrow(
        "SELECT stream_id, position, updated_at FROM sync_cursor WHERE stream_id = $1",
        stream_id,
    )
    if row is None:
        return None
    return SyncCursor(row["stream_id"], row["position"], row["updated_at"])


async def upsert_cursor(pool: Pool, cursor: SyncCursor) -> None:
    """Persist *cursor*, replacing any previous position of its stream."""
    await pool.execute(
        """
        INSERT INTO sync_cursor (stream_id, position, updated_at)
        VALUES ($1, $2, $3)
        ON CONFLICT (stream_id)
        DO UPDATE SET position = EXCLUDED.position, updated_at = EXCLUDED.updated_at
        """,
        *cursor.to_db_params(),
    )


async def fetch_all_cursors(pool: Pool) -> dict[str, int]:
    """Every persisted cursor position keyed by stream id.

    Used once at startup to seed [AppConfig][chainindexer.core.state.AppConfig].
    """
    rows = await pool.fetch("SELECT stream_id, position FROM sync_cursor")
    return {row["stream_id"]: row["position"] for row in rows}


# =============================================================================
# Chain queries
# =============================================================================


async def fetch_chains(pool: Pool) -> dict[str, int]:
    """Supported chains as ``{platform name: chainid}``.

    Platform names are the keys the market-data registry uses in its
    ``platforms`` mappings.
    """
    rows = await pool.fetch("SELECT chainid, name FROM chains ORDER BY chainid")
    return {row["name"]: row["chainid"] for row in rows}


async def add_chain(pool: Pool, chainid: int, name: str) -> bool:
    """Register a chain. Returns False if *chainid* was already known."""
    inserted = await pool.fetchval(
        """
        WITH ins AS (
            INSERT INTO chains (chainid, name) VALUES ($1, $2)
            ON CONFLICT (chainid) DO NOTHING
            RETURNING 1
        )
        SELECT count(*) FROM ins
        """,
        chainid,
        name,
    )
    return bool(inserted)


async def seed_default_chains(pool: Pool) -> int:
    """Insert the default chains that are not registered yet.

    Returns:
        Number of chains inserted.
    """
    inserted = await pool.fetchval(
        """
        WITH ins AS (
            INSERT INTO chains (chainid, name)
            SELECT * FROM unnest($1::int[], $2::text[])
            ON CONFLICT DO NOTHING
            RETURNING 1
        )
        SELECT count(*) FROM ins
        """,
        [chainid for chainid, _ in DEFAULT_CHAINS],
        [name for _, name in DEFAULT_CHAINS],
    )
    return int(inserted or 0)


# =============================================================================
# Registry map queries
# =============================================================================


async def fetch_map_beyond(pool: Pool, kind: MapKind, cursor: int) -> list[MapEntry]:
    """Registry rows with ``id > cursor`` in ascending id order.

    Rows that fail [MapEntry][chainindexer.models.records.MapEntry]
    construction (malformed address) are skipped with a warning.
    """
    table, id_column = _MAP_TABLES[kind]
    rows = await pool.fetch(
        f"""
        SELECT id, {id_column} AS external_id, symbol, name, chainid, address
        FROM {table}
        WHERE id > $1
        ORDER BY id ASC
        """,  # noqa: S608
        cursor,
    )
    entries: list[MapEntry] = []
    for row in rows:
        try:
            entries.append(
                MapEntry(
                    id=row["id"],
                    kind=kind,
                    external_id=row["external_id"],
                    symbol=row["symbol"],
                    name=row["name"],
                    chainid=row["chainid"],
                    address=row["address"],
                )
            )
        except (ValueError, TypeError) as e:
            logger.warning("Skipping invalid %s row %s: %s", table, row["id"], e)
    return entries


async def insert_map_listings(pool: Pool, kind: MapKind, listings: list[MapListing]) -> int:
    """Insert registry listings not yet mapped (``ON CONFLICT DO NOTHING``).

    Returns:
        Number of rows actually inserted.
    """
    if not listings:
        return 0
    table, id_column = _MAP_TABLES[kind]
    inserted = await pool.fetchval(
        f"""
        WITH ins AS (
            INSERT INTO {table} ({id_column}, symbol, name, chainid, address)
            SELECT * FROM unnest($1::text[], $2::text[], $3::text[], $4::int[], $5::text[])
            ON CONFLICT (address, chainid) DO NOTHING
            RETURNING 1
        )
        SELECT count(*) FROM ins
        """,  # noqa: S608
        [listing.external_id for listing in listings],
        [listing.symbol for listing in listings],
        [listing.name for listing in listings],
        [listing.chainid for listing in listings],
        [listing.address for listing in listings],
    )
    return int(inserted or 0)


async def fetch_existing_metadata_keys(pool: Pool) -> set[tuple[str, int]]:
    """Natural keys ``(address, chainid)`` already present in ``metadata``."""
    rows = await pool.fetch("SELECT address, chainid FROM metadata")
    return {(row["address"], row["chainid"]) for row in rows}


# =============================================================================
# Metadata queries
# =============================================================================


async def upsert_metadata(pool: Pool, record: TokenMetadata) -> None:
    """Insert *record* or fill the ``NULL`` columns of the existing row.

    ``symbol`` and ``name`` are never changed once stored; every optional
    column keeps its current non-null value.
    """
    await pool.execute(
        """
        INSERT INTO metadata (
            tokenid, nftid, symbol, name, decimals, homepage, image,
            description, notices, chainid, address
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
        ON CONFLICT (address, chainid) DO UPDATE SET
            tokenid = COALESCE(metadata.tokenid, EXCLUDED.tokenid),
            nftid = COALESCE(metadata.nftid, EXCLUDED.nftid),
            decimals = COALESCE(metadata.decimals, EXCLUDED.decimals),
            homepage = COALESCE(metadata.homepage, EXCLUDED.homepage),
            image = COALESCE(metadata.image, EXCLUDED.image),
            description = COALESCE(metadata.description, EXCLUDED.description),
            notices = COALESCE(metadata.notices, EXCLUDED.notices),
            updated_at = now()
        """,
        *record.to_db_params(),
    )


async def fetch_metadata_missing_verification(
    pool: Pool, chainids: list[int], limit: int
) -> list[tuple[int, str]]:
    """``(chainid, address)`` of metadata rows not yet checked by an explorer.

    Only chains in *chainids* (those with an explorer endpoint) are
    returned, oldest rows first.
    """
    if not chainids:
        return []
    rows = await pool.fetch(
        """
        SELECT chainid, address
        FROM metadata
        WHERE is_verified IS NULL AND chainid = ANY($1::int[])
        ORDER BY id ASC
        LIMIT $2
        """,
        chainids,
        limit,
    )
    return [(row["chainid"], row["address"]) for row in rows]


async def update_metadata_verification(pool: Pool, verification: ContractVerification) -> None:
    """Fill the explorer columns of one metadata row (coalesce only)."""
    await pool.execute(
        """
        UPDATE metadata SET
            is_verified = COALESCE(is_verified, $3),
            risk_level = COALESCE(risk_level, $4),
            abi = COALESCE(abi, $5),
            updated_at = now()
        WHERE address = $1 AND chainid = $2
        """,
        verification.address,
        verification.chainid,
        verification.is_verified,
        verification.risk_level,
        verification.abi,
    )


# =============================================================================
# Chain-log queries
# =============================================================================


async def fetch_log_keys_beyond(pool: Pool, chainid: int, block: int) -> set[tuple[str, int]]:
    """Natural keys ``(tx_hash, log_index)`` stored for blocks after *block*."""
    rows = await pool.fetch(
        """
        SELECT tx_hash, log_index
        FROM log_events
        WHERE chainid = $1 AND block_number > $2
        """,
        chainid,
        block,
    )
    return {(row["tx_hash"], row["log_index"]) for row in rows}


async def insert_log_events(pool: Pool, events: list[LogEvent]) -> None:
    """Insert decoded events; rows already stored are left untouched.

    The batch runs as one ``executemany`` so a block is written entirely
    or not at all.
    """
    await pool.executemany(
        """
        INSERT INTO log_events (
            tx_hash, log_index, chainid, block_number, block_timestamp,
            contract_address, event_name, from_address, to_address, value
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::numeric)
        ON CONFLICT (tx_hash, log_index) DO NOTHING
        """,
        [tuple(event.to_db_params()) for event in events],
    )


# =============================================================================
# Snapshot queries
# =============================================================================


async def replace_marketdata(pool: Pool, tickers: list[MarketTicker]) -> int:
    """Atomically replace the whole ``marketdata`` snapshot.

    Readers see either the previous snapshot or the new one, never a mix.

    Returns:
        Number of rows written.
    """
    columns = ", ".join(_MARKETDATA_COLUMNS)
    placeholders = ", ".join(f"${i}" for i in range(1, len(_MARKETDATA_COLUMNS) + 1))
    query = f"INSERT INTO marketdata ({columns}) VALUES ({placeholders})"  # noqa: S608

    # Later pages can repeat a token already listed on an earlier one
    unique: dict[str, MarketTicker] = {}
    for ticker in tickers:
        unique.setdefault(ticker.token_id, ticker)

    async with pool.transaction() as conn:
        await conn.execute("DELETE FROM marketdata")
        await conn.executemany(query, [tuple(t) for t in unique.values()])
    return len(unique)


async def replace_forex_rates(pool: Pool, base: str, rates: dict[str, Any], timestamp: int) -> None:
    """Atomically replace the stored exchange rates."""
    async with pool.transaction() as conn:
        await conn.execute("DELETE FROM forex_rates")
        await conn.execute(
            "INSERT INTO forex_rates (base, rates, timestamp) VALUES ($1, $2, $3)",
            base,
            rates,
            timestamp,
        )


async def initialize_schema(pool: Pool) -> None:
    """Apply the bundled ``schema.sql``; every statement is idempotent."""
    script = resources.files("chainindexer").joinpath("sql", "schema.sql").read_text(encoding="utf-8")
    await pool.execute(script)
