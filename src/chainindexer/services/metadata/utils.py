"""Metadata pipeline utility functions.

Pure helpers that turn registry and explorer JSON payloads into records.
Extraction is deliberately minimal: only the fields the ``metadata``,
``tokenmap`` and ``nftmap`` tables store are read, and a payload missing
a required field raises
[ValidationError][chainindexer.core.exceptions.ValidationError] so the
sync treats the item as permanently skippable.
"""

from __future__ import annotations

import logging
from typing import Any

from chainindexer.core.exceptions import ValidationError
from chainindexer.models.records import ContractVerification, MapEntry, MapListing, TokenMetadata


logger = logging.getLogger(__name__)


def _pointer(payload: Any, *path: str | int) -> Any:
    """Walk *path* through nested dicts and lists; ``None`` if any step is missing."""
    current = payload
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
        elif not isinstance(current, dict):
            return None
        current = current[step] if isinstance(step, int) else current.get(step)
    return current


def _str_or_none(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _non_negative_int_or_none(value: Any) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    return None


def _require_mapping(payload: Any, what: str) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValidationError(f"{what}: expected an object, got {type(payload).__name__}")
    return payload


def _require_symbol_name(payload: dict[str, Any], what: str) -> tuple[str, str]:
    symbol = _str_or_none(payload.get("symbol"))
    name = _str_or_none(payload.get("name"))
    if symbol is None or name is None:
        raise ValidationError(f"{what}: empty symbol or name")
    return symbol, name


# =============================================================================
# Registry listings
# =============================================================================


def parse_token_listings(payload: Any, chains: dict[str, int]) -> list[MapListing]:
    """Explode ``coins/list?include_platform=true`` into one listing per supported chain.

    Platforms not in *chains* and malformed addresses are ignored.
    """
    listings: list[MapListing] = []
    if not isinstance(payload, list):
        return listings
    for coin in payload:
        if not isinstance(coin, dict) or not _str_or_none(coin.get("id")):
            continue
        platforms = coin.get("platforms")
        if not isinstance(platforms, dict):
            continue
        for platform, address in platforms.items():
            chainid = chains.get(platform)
            if chainid is None or not _str_or_none(address):
                continue
            listing = _listing(coin, chainid, address)
            if listing is not None:
                listings.append(listing)
    return listings


def parse_nft_listings(payload: Any, chains: dict[str, int]) -> list[MapListing]:
    """Turn one ``nfts/list`` page into listings for supported chains."""
    listings: list[MapListing] = []
    if not isinstance(payload, list):
        return listings
    for nft in payload:
        if not isinstance(nft, dict) or not _str_or_none(nft.get("id")):
            continue
        chainid = chains.get(nft.get("asset_platform_id") or "")
        address = nft.get("contract_address")
        if chainid is None or not _str_or_none(address):
            continue
        listing = _listing(nft, chainid, address)
        if listing is not None:
            listings.append(listing)
    return listings


def _listing(item: dict[str, Any], chainid: int, address: str) -> MapListing | None:
    try:
        # Build through MapEntry to share its address normalization
        entry = MapEntry(
            id=1,
            kind="token",
            external_id=item["id"],
            symbol=item.get("symbol") or "",
            name=item.get("name") or "",
            chainid=chainid,
            address=address.strip(),
        )
    except (ValueError, TypeError) as e:
        logger.debug("Skipping registry listing %s: %s", item.get("id"), e)
        return None
    return MapListing(entry.external_id, entry.symbol, entry.name, entry.chainid, entry.address)


# =============================================================================
# Metadata details
# =============================================================================


def extract_token_metadata(entry: MapEntry, payload: Any, chains: dict[str, int]) -> TokenMetadata:
    """Build token metadata from a ``coins/{id}`` response.

    The response must list *entry*'s address under a platform that maps to
    *entry*'s chain; decimals come from that platform's ``detail_platforms``
    entry.

    Raises:
        ValidationError: If the platform/address does not match, or symbol
            or name is empty.
    """
    what = f"token {entry.external_id}"
    data = _require_mapping(payload, what)

    platforms = data.get("platforms")
    matched_platform: str | None = None
    if isinstance(platforms, dict):
        for platform, address in platforms.items():
            if chains.get(platform) != entry.chainid or not isinstance(address, str):
                continue
            if address.strip().lower() == entry.address:
                matched_platform = platform
                break
    if matched_platform is None:
        raise ValidationError(f"{what}: no platform matches chain {entry.chainid} / {entry.address}")

    symbol, name = _require_symbol_name(data, what)
    decimals = _pointer(data, "detail_platforms", matched_platform, "decimal_place")
    notices = data.get("additional_notices")

    try:
        return TokenMetadata(
            chainid=entry.chainid,
            address=entry.address,
            symbol=symbol,
            name=name,
            tokenid=entry.external_id,
            decimals=_non_negative_int_or_none(decimals),
            homepage=_str_or_none(_pointer(data, "links", "homepage", 0)),
            image=_str_or_none(_pointer(data, "image", "large")),
            description=_str_or_none(_pointer(data, "description", "en")),
            notices=notices if isinstance(notices, list) else [],
        )
    except (ValueError, TypeError) as e:
        raise ValidationError(f"{what}: {e}") from e


def extract_nft_metadata(entry: MapEntry, payload: Any, chains: dict[str, int]) -> TokenMetadata:
    """Build NFT collection metadata from an ``nfts/{id}`` response.

    Raises:
        ValidationError: If the platform or contract address does not match
            *entry*, or symbol or name is empty.
    """
    what = f"nft {entry.external_id}"
    data = _require_mapping(payload, what)

    if chains.get(data.get("asset_platform_id") or "") != entry.chainid:
        raise ValidationError(f"{what}: platform does not map to chain {entry.chainid}")
    contract = data.get("contract_address")
    if not isinstance(contract, str) or contract.strip().lower() != entry.address:
        raise ValidationError(f"{what}: contract address does not match {entry.address}")

    symbol, name = _require_symbol_name(data, what)
    try:
        return TokenMetadata(
            chainid=entry.chainid,
            address=entry.address,
            symbol=symbol,
            name=name,
            nftid=entry.external_id,
            homepage=_str_or_none(_pointer(data, "links", "homepage")),
            image=_str_or_none(_pointer(data, "image", "small")),
            description=_str_or_none(data.get("description")),
        )
    except (ValueError, TypeError) as e:
        raise ValidationError(f"{what}: {e}") from e


# =============================================================================
# Explorer verification
# =============================================================================


def extract_verification(chainid: int, address: str, payload: Any, abi: Any = None) -> ContractVerification:
    """Build verification details from an explorer ``addresses/{address}`` response.

    ``risk_level`` is ``"scam"`` for flagged contracts, otherwise the
    explorer's reputation label.

    Raises:
        ValidationError: If the payload is not an object.
    """
    data = _require_mapping(payload, f"address {address}")
    is_verified = data.get("is_verified")
    if data.get("is_scam") is True:
        risk_level: str | None = "scam"
    else:
        risk_level = _str_or_none(data.get("reputation"))
    return ContractVerification(
        chainid=chainid,
        address=address,
        is_verified=is_verified if isinstance(is_verified, bool) else None,
        risk_level=risk_level,
        abi=abi,
    )
