"""Metadata pipeline for chainindexer.

Keeps the token and NFT registry maps and their ``metadata`` rows current.
One daily cycle of
[MetadataPipeline][chainindexer.services.metadata.MetadataPipeline] runs
five steps in order, sharing one HTTP session:

1. [TokenMapSync][chainindexer.services.metadata.TokenMapSync]: insert
   new ``coins/list`` listings into ``tokenmap``.
2. [NftMapSync][chainindexer.services.metadata.NftMapSync]: page through
   ``nfts/list`` into ``nftmap``.
3. [TokenMetadataSync][chainindexer.services.metadata.TokenMetadataSync]:
   cursor-driven ``coins/{id}`` enrichment of ``tokenmap`` rows.
4. [NftMetadataSync][chainindexer.services.metadata.NftMetadataSync]:
   cursor-driven ``nfts/{id}`` enrichment of ``nftmap`` rows.
5. [ExplorerVerificationSync][chainindexer.services.metadata.ExplorerVerificationSync]:
   verification status, risk label and ABI from the chain's explorer.

A failing step is logged and the remaining steps still run; the first
failure is re-raised once every step had its turn, so the scheduler
reports the cycle as failed. The initial-load flag in
[AppConfig][chainindexer.core.state.AppConfig] is cleared only after a
cycle in which every step succeeded.

See Also:
    [MetadataConfig][chainindexer.services.metadata.MetadataConfig]:
        Configuration model for this pipeline.
    [SyncPipeline][chainindexer.services.common.pipeline.SyncPipeline]:
        Cursor semantics of the two metadata steps.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any, ClassVar

import aiohttp

from chainindexer.core.base_pipeline import BasePipeline
from chainindexer.core.exceptions import PersistenceError, TransportError, ValidationError
from chainindexer.models.constants import PipelineName, StreamName, Upstream
from chainindexer.models.fetch import FetchEmpty, FetchFailed, FetchOutcome
from chainindexer.models.records import ContractVerification, MapEntry, MapKind, TokenMetadata
from chainindexer.services.common.pipeline import PERSIST_ERRORS, FetchingPipeline, SyncPipeline
from chainindexer.services.common.queries import (
    fetch_chains,
    fetch_existing_metadata_keys,
    fetch_map_beyond,
    fetch_metadata_missing_verification,
    insert_map_listings,
    update_metadata_verification,
    upsert_metadata,
)

from .configs import (
    CoinGeckoConfig,
    MetadataConfig,
    MetadataSyncConfig,
    NftMapSyncConfig,
    TokenMapSyncConfig,
    VerificationSyncConfig,
)
from .utils import (
    extract_nft_metadata,
    extract_token_metadata,
    extract_verification,
    parse_nft_listings,
    parse_token_listings,
)


if TYPE_CHECKING:
    from chainindexer.core.pool import Pool
    from chainindexer.core.state import AppConfig
    from chainindexer.utils.http import RequestCustomizer, RequestOptions


def coingecko_request(
    config: CoinGeckoConfig, api_key: str, params: dict[str, str] | None = None
) -> RequestCustomizer:
    """Build a customizer that adds the API key header and query *params*."""

    def customize(options: RequestOptions) -> None:
        options.headers[config.api_key_header] = api_key
        if params:
            options.params.update(params)

    return customize


_DETAIL_PARAMS = {
    "localization": "false",
    "tickers": "false",
    "market_data": "false",
    "community_data": "false",
    "developer_data": "false",
    "sparkline": "false",
}


# =============================================================================
# Registry map steps
# =============================================================================


class TokenMapSync(FetchingPipeline[TokenMapSyncConfig]):
    """Insert listings of supported chains from ``coins/list``.

    Already-mapped ``(address, chainid)`` pairs are left untouched.
    """

    PIPELINE_NAME: ClassVar[str] = "token_map"
    CONFIG_CLASS: ClassVar[type[TokenMapSyncConfig]] = TokenMapSyncConfig
    UPSTREAM: ClassVar[Upstream] = Upstream.COINGECKO

    async def run(self) -> None:
        async with aiohttp.ClientSession() as session:
            await self.sync(session)

    async def sync(self, session: aiohttp.ClientSession) -> int:
        """Fetch the full coin list and insert the new listings.

        Returns:
            Number of rows inserted.

        Raises:
            TransportError: If the list could not be fetched.
        """
        api_key = await self._state.credential(self.UPSTREAM)
        coingecko = self._config.coingecko
        outcome = await self._fetch(
            session,
            f"{coingecko.base_url}/coins/list",
            coingecko_request(coingecko, api_key, {"include_platform": "true"}),
        )
        if isinstance(outcome, FetchFailed):
            raise TransportError(f"coins/list: {outcome.reason}")
        if isinstance(outcome, FetchEmpty):
            self._logger.info("token_map_empty")
            return 0

        pool = await self._state.pool()
        chains = await fetch_chains(pool)
        listings = parse_token_listings(outcome.payload, chains)
        inserted = await insert_map_listings(pool, MapKind.TOKEN, listings)
        self.inc_counter("inserted", inserted)
        self._logger.info("token_map_synced", listings=len(listings), inserted=inserted)
        return inserted


class NftMapSync(FetchingPipeline[NftMapSyncConfig]):
    """Page through ``nfts/list`` until an empty page and insert new listings."""

    PIPELINE_NAME: ClassVar[str] = "nft_map"
    CONFIG_CLASS: ClassVar[type[NftMapSyncConfig]] = NftMapSyncConfig
    UPSTREAM: ClassVar[Upstream] = Upstream.COINGECKO

    async def run(self) -> None:
        async with aiohttp.ClientSession() as session:
            await self.sync(session)

    async def sync(self, session: aiohttp.ClientSession) -> int:
        """Insert every page's new listings.

        Pages already written stay written when a later page fails.

        Returns:
            Number of rows inserted.

        Raises:
            TransportError: If a page could not be fetched.
        """
        api_key = await self._state.credential(self.UPSTREAM)
        coingecko = self._config.coingecko
        pool = await self._state.pool()
        chains = await fetch_chains(pool)

        inserted = 0
        pages = 0
        for page in range(1, self._config.max_pages + 1):
            params = {"per_page": str(self._config.per_page), "page": str(page)}
            outcome = await self._fetch(
                session,
                f"{coingecko.base_url}/nfts/list",
                coingecko_request(coingecko, api_key, params),
            )
            if isinstance(outcome, FetchFailed):
                raise TransportError(f"nfts/list page {page}: {outcome.reason}")
            if isinstance(outcome, FetchEmpty):
                break
            pages += 1
            listings = parse_nft_listings(outcome.payload, chains)
            inserted += await insert_map_listings(pool, MapKind.NFT, listings)
        else:
            self._logger.warning("nft_map_page_limit", max_pages=self._config.max_pages)

        self.inc_counter("inserted", inserted)
        self._logger.info("nft_map_synced", pages=pages, inserted=inserted)
        return inserted


# =============================================================================
# Cursor-driven metadata steps
# =============================================================================


class _RegistryMetadataSync(SyncPipeline[MetadataSyncConfig, MapEntry, TokenMetadata]):
    """Shared hooks of the token and NFT metadata streams."""

    CONFIG_CLASS: ClassVar[type[MetadataSyncConfig]] = MetadataSyncConfig
    UPSTREAM: ClassVar[Upstream] = Upstream.COINGECKO
    KIND: ClassVar[MapKind]
    DETAIL_PATH: ClassVar[str]

    def __init__(self, state: AppConfig, config: MetadataSyncConfig | None = None) -> None:
        super().__init__(state, config)
        self._chains: dict[str, int] = {}
        self._api_key = ""

    async def prepare(self, pool: Pool, session: aiohttp.ClientSession) -> None:
        self._chains = await fetch_chains(pool)
        self._api_key = await self._state.credential(self.UPSTREAM)

    async def load_items(
        self, pool: Pool, session: aiohttp.ClientSession, cursor: int
    ) -> Sequence[MapEntry]:
        return await fetch_map_beyond(pool, self.KIND, cursor)

    async def preload_keys(self, pool: Pool, cursor: int) -> set[Any]:
        return await fetch_existing_metadata_keys(pool)

    def is_known(self, item: MapEntry, known: set[Any]) -> bool:
        return item.key in known

    async def fetch(self, session: aiohttp.ClientSession, item: MapEntry) -> FetchOutcome:
        coingecko = self._config.coingecko
        return await self._fetch(
            session,
            f"{coingecko.base_url}/{self.DETAIL_PATH}/{item.external_id}",
            coingecko_request(coingecko, self._api_key, _DETAIL_PARAMS),
        )

    async def persist(self, pool: Pool, records: list[TokenMetadata]) -> None:
        for record in records:
            await upsert_metadata(pool, record)


class TokenMetadataSync(_RegistryMetadataSync):
    """Walk ``tokenmap`` and store ``coins/{id}`` details of unknown tokens."""

    PIPELINE_NAME: ClassVar[str] = "token_metadata"
    STREAM: ClassVar[str] = StreamName.TOKEN_METADATA
    KIND: ClassVar[MapKind] = MapKind.TOKEN
    DETAIL_PATH: ClassVar[str] = "coins"

    def build_records(self, item: MapEntry, payload: Any) -> Iterable[TokenMetadata]:
        return [extract_token_metadata(item, payload, self._chains)]


class NftMetadataSync(_RegistryMetadataSync):
    """Walk ``nftmap`` and store ``nfts/{id}`` details of unknown collections."""

    PIPELINE_NAME: ClassVar[str] = "nft_metadata"
    STREAM: ClassVar[str] = StreamName.NFT_METADATA
    KIND: ClassVar[MapKind] = MapKind.NFT
    DETAIL_PATH: ClassVar[str] = "nfts"

    def build_records(self, item: MapEntry, payload: Any) -> Iterable[TokenMetadata]:
        return [extract_nft_metadata(item, payload, self._chains)]


# =============================================================================
# Explorer verification step
# =============================================================================


def smart_contract_url(endpoint: str, address: str) -> str:
    """ABI endpoint that sits beside an explorer ``.../addresses`` endpoint."""
    root = endpoint.removesuffix("/addresses")
    return f"{root}/smart-contracts/{address}"


class ExplorerVerificationSync(FetchingPipeline[VerificationSyncConfig]):
    """Fill ``is_verified``, ``risk_level`` and ``abi`` of stored metadata rows.

    Only chains with an explorer endpoint in
    [AppConfig][chainindexer.core.state.AppConfig] are checked. Rows the
    explorer knows nothing about stay unverified and are retried next cycle.
    """

    PIPELINE_NAME: ClassVar[str] = "verification"
    CONFIG_CLASS: ClassVar[type[VerificationSyncConfig]] = VerificationSyncConfig
    UPSTREAM: ClassVar[Upstream] = Upstream.EXPLORER

    async def run(self) -> None:
        async with aiohttp.ClientSession() as session:
            await self.sync(session)

    async def sync(self, session: aiohttp.ClientSession) -> int:
        """Check one batch of unverified rows.

        Returns:
            Number of rows updated.

        Raises:
            TransportError: If every fetch of a non-empty batch failed.
        """
        endpoints = await self._state.explorer_endpoints()
        pool = await self._state.pool()
        rows = await fetch_metadata_missing_verification(
            pool, sorted(endpoints), self._config.batch_size
        )

        updated = failed = persist_failed = 0
        for chainid, address in rows:
            endpoint = endpoints[chainid]
            outcome = await self._fetch(session, f"{endpoint}/{address}")
            if isinstance(outcome, FetchFailed):
                failed += 1
                self._logger.warning(
                    "verification_fetch_failed", chainid=chainid, address=address, reason=outcome.reason
                )
                continue
            if isinstance(outcome, FetchEmpty):
                continue

            abi = None
            if self._config.fetch_abi and isinstance(outcome.payload, dict) and outcome.payload.get("is_verified"):
                abi = await self._fetch_abi(session, endpoint, address)

            try:
                verification = extract_verification(chainid, address, outcome.payload, abi)
            except ValidationError as e:
                self._logger.debug("verification_invalid", chainid=chainid, address=address, error=str(e))
                continue
            try:
                await self._store(verification)
            except PersistenceError as e:
                persist_failed += 1
                self.inc_counter("persist_failed")
                self._logger.error(
                    "verification_persist_failed", chainid=chainid, address=address, error=str(e)
                )
                continue
            updated += 1

        self.inc_counter("verified", updated)
        self._logger.info(
            "verification_synced",
            checked=len(rows),
            updated=updated,
            failed=failed,
            persist_failed=persist_failed,
        )
        if rows and failed == len(rows):
            raise TransportError(f"explorer unreachable for all {failed} rows")
        return updated

    async def _store(self, verification: ContractVerification) -> None:
        # Re-read the pool so a cutover during the batch is honoured
        pool = await self._state.pool()
        try:
            await update_metadata_verification(pool, verification)
        except PERSIST_ERRORS as e:
            raise PersistenceError(f"verification {verification.chainid}:{verification.address}: {e}") from e

    async def _fetch_abi(self, session: aiohttp.ClientSession, endpoint: str, address: str) -> Any:
        outcome = await self._fetch(session, smart_contract_url(endpoint, address))
        if isinstance(outcome, FetchFailed | FetchEmpty) or not isinstance(outcome.payload, dict):
            return None
        return outcome.payload.get("abi")


# =============================================================================
# Composite pipeline
# =============================================================================


class MetadataPipeline(BasePipeline[MetadataConfig]):
    """Daily registry and metadata refresh.

    See the module docstring for the step order and failure handling.
    """

    PIPELINE_NAME: ClassVar[str] = PipelineName.METADATA
    CONFIG_CLASS: ClassVar[type[MetadataConfig]] = MetadataConfig

    def __init__(self, state: AppConfig, config: MetadataConfig | None = None) -> None:
        super().__init__(state, config)
        self._steps = self._build_steps()

    @property
    def steps(self) -> list[TokenMapSync | NftMapSync | _RegistryMetadataSync | ExplorerVerificationSync]:
        return list(self._steps)

    def _inherited(self) -> dict[str, Any]:
        """Fields an omitted step section takes from this level."""
        return {
            "fetch": self._config.fetch,
            "metrics": self._config.metrics,
        }

    def _build_steps(
        self,
    ) -> list[TokenMapSync | NftMapSync | _RegistryMetadataSync | ExplorerVerificationSync]:
        c = self._config
        inherited = self._inherited()
        with_api = {**inherited, "coingecko": c.coingecko}
        return [
            TokenMapSync(self._state, c.token_map or TokenMapSyncConfig(**with_api)),
            NftMapSync(self._state, c.nft_map or NftMapSyncConfig(**with_api)),
            TokenMetadataSync(self._state, c.token_metadata or MetadataSyncConfig(**with_api)),
            NftMetadataSync(self._state, c.nft_metadata or MetadataSyncConfig(**with_api)),
            ExplorerVerificationSync(self._state, c.verification or VerificationSyncConfig(**inherited)),
        ]

    async def run(self) -> None:
        """Run every step once, then settle the initial-load flag.

        Raises:
            Exception: The first step failure, after all steps have run.
        """
        failures: list[tuple[str, Exception]] = []
        async with aiohttp.ClientSession() as session:
            for step in self._steps:
                if not step.config.enabled:
                    continue
                try:
                    await step.sync(session)
                except (asyncio.CancelledError, KeyboardInterrupt, SystemExit):
                    raise
                except Exception as e:  # step error boundary
                    failures.append((step.name, e))
                    self.inc_counter("steps_failed")
                    self._logger.error(
                        "step_failed", step=step.name, error=str(e), error_type=type(e).__name__
                    )

        if failures:
            self._logger.warning("metadata_incomplete", failed_steps=[name for name, _ in failures])
            raise failures[0][1]

        if await self._state.is_initializing_metadata():
            await self._state.set_initializing_metadata(False)
            self._logger.info("metadata_initialized")
