"""
Unit tests for services.metadata.service module.

Tests:
- coingecko_request() header and params
- TokenMapSync: failure, empty list, inserted listings
- NftMapSync: pagination until an empty page, page limit, failed page
- TokenMetadataSync / NftMetadataSync hooks and detail URLs
- ExplorerVerificationSync: ABI fetch, skipped rows, failed writes, all-failed batch
- MetadataPipeline: step inheritance, failure isolation, initial-load flag
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chainindexer.core.exceptions import ConnectionPoolError, TransportError
from chainindexer.models import FetchEmpty, FetchFailed, FetchSuccess, MapEntry, MapKind
from chainindexer.services.common.configs import FetchConfig
from chainindexer.services.metadata import (
    CoinGeckoConfig,
    ExplorerVerificationSync,
    MetadataConfig,
    MetadataPipeline,
    NftMapSync,
    NftMapSyncConfig,
    NftMetadataSync,
    TokenMapSync,
    TokenMetadataSync,
)
from chainindexer.services.metadata.service import coingecko_request, smart_contract_url
from chainindexer.utils.http import RequestOptions
from tests.conftest import TEST_EXPLORER, make_response


SERVICE = "chainindexer.services.metadata.service"
ADDRESS = "0x" + "ab" * 20
CHAINS = {"ethereum": 1}


@pytest.fixture
def fetch_chains():
    with patch(f"{SERVICE}.fetch_chains", AsyncMock(return_value=CHAINS)) as mock:
        yield mock


@pytest.fixture
def insert_listings():
    with patch(f"{SERVICE}.insert_map_listings", AsyncMock(return_value=1)) as mock:
        yield mock


def _coin(coin_id: str) -> dict:
    return {"id": coin_id, "symbol": coin_id[:3], "name": coin_id, "platforms": {"ethereum": ADDRESS}}


# =============================================================================
# Request customization
# =============================================================================


class TestCoingeckoRequest:
    """coingecko_request()."""

    def test_sets_header_and_params(self):
        options = RequestOptions()
        coingecko_request(CoinGeckoConfig(api_key_header="x-cg-pro-api-key"), "k", {"page": "2"})(options)

        assert options.headers == {"x-cg-pro-api-key": "k"}
        assert options.params == {"page": "2"}

    def test_smart_contract_url(self):
        assert smart_contract_url(TEST_EXPLORER, ADDRESS) == (
            f"https://explorer.test/api/v2/smart-contracts/{ADDRESS}"
        )


# =============================================================================
# Registry map steps
# =============================================================================


class TestTokenMapSync:
    """coins/list refresh."""

    async def test_inserts_listings(self, state, make_session, fetch_chains, insert_listings):
        session = make_session(make_response([_coin("usd-coin")]))

        inserted = await TokenMapSync(state).sync(session)

        assert inserted == 1
        url = session.get.call_args.args[0]
        kwargs = session.get.call_args.kwargs
        assert url == "https://api.coingecko.com/api/v3/coins/list"
        assert kwargs["params"] == {"include_platform": "true"}
        assert kwargs["headers"] == {"x-cg-demo-api-key": "cg-test-key"}
        _, kind, listings = insert_listings.await_args.args
        assert kind is MapKind.TOKEN
        assert [listing.external_id for listing in listings] == ["usd-coin"]

    async def test_empty_list(self, state, make_session, fetch_chains, insert_listings):
        assert await TokenMapSync(state).sync(make_session(make_response(b"[]"))) == 0
        insert_listings.assert_not_awaited()

    async def test_failure_raises(self, state, insert_listings):
        step = TokenMapSync(state)
        step._fetch = AsyncMock(return_value=FetchFailed("HTTP 429", attempts=3))

        with pytest.raises(TransportError, match="coins/list"):
            await step.sync(MagicMock())


class TestNftMapSync:
    """Paginated nfts/list refresh."""

    async def test_pages_until_empty(self, state, fetch_chains, insert_listings):
        step = NftMapSync(state, NftMapSyncConfig(per_page=2))
        step._fetch = AsyncMock(
            side_effect=[FetchSuccess([{"id": "a"}]), FetchSuccess([{"id": "b"}]), FetchEmpty()]
        )

        assert await step.sync(MagicMock()) == 2

        assert step._fetch.await_count == 3
        assert insert_listings.await_count == 2

    async def test_page_params(self, state, make_session, fetch_chains, insert_listings):
        session = make_session(make_response([{"id": "a"}]), make_response(b""))

        await NftMapSync(state, NftMapSyncConfig(per_page=50)).sync(session)

        params = [c.kwargs["params"] for c in session.get.call_args_list]
        assert params == [{"per_page": "50", "page": "1"}, {"per_page": "50", "page": "2"}]

    async def test_stops_at_page_limit(self, state, fetch_chains, insert_listings):
        step = NftMapSync(state, NftMapSyncConfig(max_pages=2))
        step._fetch = AsyncMock(return_value=FetchSuccess([{"id": "a"}]))

        await step.sync(MagicMock())

        assert step._fetch.await_count == 2

    async def test_failed_page_raises_after_earlier_pages(self, state, fetch_chains, insert_listings):
        step = NftMapSync(state)
        step._fetch = AsyncMock(side_effect=[FetchSuccess([]), FetchFailed("HTTP 500", attempts=3)])

        with pytest.raises(TransportError, match="page 2"):
            await step.sync(MagicMock())

        insert_listings.assert_awaited_once()


# =============================================================================
# Cursor-driven metadata steps
# =============================================================================


class TestRegistryMetadataSync:
    """Hooks shared by the token and NFT metadata streams."""

    def _entry(self, kind=MapKind.TOKEN, external_id="usd-coin"):
        return MapEntry(1, kind, external_id, "usdc", "USDC", 1, ADDRESS)

    async def test_streams(self, state):
        assert TokenMetadataSync(state).stream_id == "token_metadata"
        assert NftMetadataSync(state).stream_id == "nft_metadata"

    async def test_prepare_loads_chains_and_key(self, state, fetch_chains, mock_pool):
        step = TokenMetadataSync(state)
        await step.prepare(mock_pool, MagicMock())
        assert step._chains == CHAINS
        assert step._api_key == "cg-test-key"

    async def test_detail_url(self, state, make_session, fetch_chains, mock_pool):
        step = NftMetadataSync(state)
        await step.prepare(mock_pool, MagicMock())
        session = make_session(make_response({"id": "pudgy"}))

        outcome = await step.fetch(session, self._entry(MapKind.NFT, "pudgy"))

        assert isinstance(outcome, FetchSuccess)
        assert session.get.call_args.args[0] == "https://api.coingecko.com/api/v3/nfts/pudgy"
        assert session.get.call_args.kwargs["params"]["tickers"] == "false"

    async def test_is_known_by_natural_key(self, state):
        step = TokenMetadataSync(state)
        assert step.is_known(self._entry(), {(ADDRESS, 1)}) is True
        assert step.is_known(self._entry(), {(ADDRESS, 8453)}) is False

    async def test_full_cycle_writes_metadata(self, state, fetch_chains, mock_pool):
        entry = self._entry()
        detail = {
            "symbol": "usdc",
            "name": "USDC",
            "platforms": {"ethereum": ADDRESS},
            "detail_platforms": {"ethereum": {"decimal_place": 6}},
        }
        step = TokenMetadataSync(state)
        step._fetch = AsyncMock(return_value=FetchSuccess(detail))

        with (
            patch(f"{SERVICE}.fetch_map_beyond", AsyncMock(return_value=[entry])),
            patch(f"{SERVICE}.fetch_existing_metadata_keys", AsyncMock(return_value=set())),
            patch(f"{SERVICE}.upsert_metadata", AsyncMock()) as upsert,
            patch("chainindexer.services.common.pipeline.upsert_cursor", AsyncMock()),
        ):
            progress = await step.sync(MagicMock())

        assert progress.upserted == 1
        record = upsert.await_args.args[1]
        assert record.tokenid == "usd-coin"
        assert record.decimals == 6


# =============================================================================
# Explorer verification step
# =============================================================================


class TestExplorerVerificationSync:
    """Explorer enrichment."""

    @pytest.fixture
    def missing(self):
        with patch(
            f"{SERVICE}.fetch_metadata_missing_verification",
            AsyncMock(return_value=[(1, ADDRESS)]),
        ) as mock:
            yield mock

    @pytest.fixture
    def update(self):
        with patch(f"{SERVICE}.update_metadata_verification", AsyncMock()) as mock:
            yield mock

    async def test_verified_contract_fetches_abi(self, state, make_session, missing, update):
        session = make_session(
            make_response({"is_verified": True, "reputation": "ok"}),
            make_response({"abi": [{"type": "function", "name": "transfer"}]}),
        )

        assert await ExplorerVerificationSync(state).sync(session) == 1

        urls = [c.args[0] for c in session.get.call_args_list]
        assert urls == [
            f"{TEST_EXPLORER}/{ADDRESS}",
            f"https://explorer.test/api/v2/smart-contracts/{ADDRESS}",
        ]
        verification = update.await_args.args[1]
        assert verification.is_verified is True
        assert verification.abi == [{"type": "function", "name": "transfer"}]
        assert missing.await_args.args[1:] == ([1], 500)

    async def test_abi_skipped_when_disabled(self, state, make_session, missing, update):
        session = make_session(make_response({"is_verified": True}))
        step = ExplorerVerificationSync.from_dict({"fetch_abi": False}, state=state)

        await step.sync(session)

        assert session.get.call_count == 1
        assert update.await_args.args[1].abi is None

    async def test_empty_response_left_for_next_cycle(self, state, make_session, missing, update):
        assert await ExplorerVerificationSync(state).sync(make_session(make_response(b""))) == 0
        update.assert_not_awaited()

    async def test_all_failed_raises(self, state, missing, update):
        step = ExplorerVerificationSync(state)
        step._fetch = AsyncMock(return_value=FetchFailed("HTTP 502", attempts=3))

        with pytest.raises(TransportError, match="all 1 rows"):
            await step.sync(MagicMock())

    async def test_write_failure_skips_row(self, state, update):
        other = "0x" + "cd" * 20
        step = ExplorerVerificationSync(state)
        step._fetch = AsyncMock(return_value=FetchSuccess({"is_verified": False, "reputation": "ok"}))
        update.side_effect = [ConnectionPoolError("pool exhausted"), None]

        with patch(
            f"{SERVICE}.fetch_metadata_missing_verification",
            AsyncMock(return_value=[(1, ADDRESS), (1, other)]),
        ):
            assert await step.sync(MagicMock()) == 1

        assert update.await_count == 2
        assert update.await_args.args[1].address == other

    async def test_unexpected_write_error_propagates(self, state, missing, update):
        step = ExplorerVerificationSync(state)
        step._fetch = AsyncMock(return_value=FetchSuccess({"is_verified": False}))
        update.side_effect = KeyError("bug")

        with pytest.raises(KeyError):
            await step.sync(MagicMock())

    async def test_nothing_to_check(self, state, update):
        with patch(f"{SERVICE}.fetch_metadata_missing_verification", AsyncMock(return_value=[])):
            assert await ExplorerVerificationSync(state).sync(MagicMock()) == 0


# =============================================================================
# Composite pipeline
# =============================================================================


def _stub_steps(pipeline: MetadataPipeline, errors: dict[str, Exception] | None = None) -> list[str]:
    """Replace every step's ``sync`` and record the order they ran in."""
    ran: list[str] = []
    errors = errors or {}
    for step in pipeline.steps:

        async def sync(_session, name=step.name):
            ran.append(name)
            if name in errors:
                raise errors[name]
            return 0

        step.sync = sync
    return ran


class TestMetadataPipeline:
    """Step orchestration."""

    def test_omitted_sections_inherit_shared_settings(self, state):
        pipeline = MetadataPipeline(
            state,
            MetadataConfig(
                fetch=FetchConfig(max_attempts=7),
                coingecko=CoinGeckoConfig(base_url="https://pro-api.coingecko.com/api/v3"),
                verification={"batch_size": 10},
            ),
        )
        token_map, nft_map, token_meta, nft_meta, verification = pipeline.steps

        assert token_map.config.fetch.max_attempts == 7
        assert nft_meta.config.coingecko.base_url.startswith("https://pro-api.")
        assert token_meta.config.max_consecutive_failures == 2
        assert verification.config.batch_size == 10
        assert verification.config.fetch.max_attempts == 5
        assert nft_map.name == "nft_map"

    async def test_runs_steps_in_order(self, state):
        pipeline = MetadataPipeline(state)
        ran = _stub_steps(pipeline)

        await pipeline.run()

        assert ran == ["token_map", "nft_map", "token_metadata", "nft_metadata", "verification"]

    async def test_failed_step_does_not_stop_others(self, state):
        await state.set_initializing_metadata(True)
        pipeline = MetadataPipeline(state)
        first = TransportError("coins/list: HTTP 429")
        ran = _stub_steps(
            pipeline, {"token_map": first, "verification": TransportError("explorer down")}
        )

        with pytest.raises(TransportError) as exc_info:
            await pipeline.run()

        assert exc_info.value is first
        assert len(ran) == 5
        assert await state.is_initializing_metadata() is True

    async def test_success_clears_initial_load_flag(self, state):
        await state.set_initializing_metadata(True)
        pipeline = MetadataPipeline(state)
        _stub_steps(pipeline)

        await pipeline.run()

        assert await state.is_initializing_metadata() is False

    async def test_disabled_step_skipped(self, state):
        pipeline = MetadataPipeline(state, MetadataConfig(nft_map={"enabled": False}))
        ran = _stub_steps(pipeline)

        await pipeline.run()

        assert "nft_map" not in ran
