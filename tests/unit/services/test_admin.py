"""
Unit tests for services.admin module.

Tests:
- switch_primary() delegates to the store manager
- reset_cursor() writes the store before shared state
- set_interval() validation against the scheduler
- rotate_credential() takes effect at the next cycle
- add_explorer_endpoint() URL validation
- add_chain() validation and insert
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chainindexer.core.exceptions import ConfigurationError, CutoverValidationError
from chainindexer.core.scheduler import Scheduler
from chainindexer.models.constants import Upstream
from chainindexer.services import admin
from chainindexer.services.forex import ForexSync
from tests.conftest import make_response


QUERIES = "chainindexer.services.admin.queries"


async def _noop() -> None:
    pass


class TestSwitchPrimary:
    """switch_primary()."""

    async def test_delegates(self):
        manager = MagicMock()
        manager.switch_primary = AsyncMock(return_value="connection")

        assert await admin.switch_primary(manager, "postgresql://db-2/indexer") == "connection"
        manager.switch_primary.assert_awaited_once_with("postgresql://db-2/indexer")

    async def test_rejection_propagates(self):
        manager = MagicMock()
        manager.switch_primary = AsyncMock(side_effect=CutoverValidationError("replica"))

        with pytest.raises(CutoverValidationError):
            await admin.switch_primary(manager, "postgresql://replica/indexer")


class TestResetCursor:
    """reset_cursor()."""

    async def test_store_then_state(self, state):
        await state.set_cursor("token_metadata", 40)

        with patch(f"{QUERIES}.upsert_cursor", AsyncMock()) as upsert:
            await admin.reset_cursor(state, "token_metadata")

        cursor = upsert.await_args.args[1]
        assert (cursor.stream_id, cursor.position) == ("token_metadata", 0)
        assert await state.cursor("token_metadata") == 0

    async def test_explicit_position(self, state):
        with patch(f"{QUERIES}.upsert_cursor", AsyncMock()):
            await admin.reset_cursor(state, "chainlogs:8453", 19_000_000)
        assert await state.cursor("chainlogs:8453") == 19_000_000

    async def test_negative_rejected(self, state):
        with patch(f"{QUERIES}.upsert_cursor", AsyncMock()) as upsert, pytest.raises(ConfigurationError):
            await admin.reset_cursor(state, "token_metadata", -1)
        upsert.assert_not_awaited()


class TestSetInterval:
    """set_interval()."""

    async def test_updates_state(self, state):
        await admin.set_interval(state, "forex", 900)
        assert await state.interval("forex", 3600) == 900

    async def test_known_pipeline(self, state):
        scheduler = Scheduler(state)
        scheduler.register_pipeline("forex", _noop, 3600)

        await admin.set_interval(state, "forex", 60, scheduler=scheduler)

        assert await state.interval("forex", 3600) == 60

    async def test_unknown_pipeline(self, state):
        with pytest.raises(ConfigurationError, match="unknown pipeline"):
            await admin.set_interval(state, "forex", 60, scheduler=Scheduler(state))

    async def test_non_positive(self, state):
        with pytest.raises(ConfigurationError):
            await admin.set_interval(state, "forex", 0)


class TestRotateCredential:
    """rotate_credential()."""

    async def test_next_cycle_uses_new_key(self, state, make_session):
        await admin.rotate_credential(state, Upstream.OPENEXCHANGERATES, "oxr-rotated")
        session = make_session(make_response(b""))

        await ForexSync(state).sync(session)

        assert session.get.call_args.kwargs["params"] == {"app_id": "oxr-rotated"}

    async def test_blank_rejected(self, state):
        with pytest.raises(ConfigurationError):
            await admin.rotate_credential(state, Upstream.COINGECKO, "   ")
        assert await state.credential(Upstream.COINGECKO) == "cg-test-key"


class TestExplorerEndpoint:
    """add_explorer_endpoint()."""

    async def test_added(self, state):
        await admin.add_explorer_endpoint(state, 10, "https://optimism.blockscout.com/api/v2/addresses/")
        assert (await state.explorer_endpoints())[10] == "https://optimism.blockscout.com/api/v2/addresses"

    @pytest.mark.parametrize(
        ("chainid", "url"),
        [(0, "https://x.test/api"), (10, "ftp://x.test/api"), (10, "optimism.blockscout.com")],
    )
    async def test_invalid(self, state, chainid, url):
        with pytest.raises(ConfigurationError):
            await admin.add_explorer_endpoint(state, chainid, url)


class TestAddChain:
    """add_chain()."""

    async def test_inserted(self, state):
        with patch(f"{QUERIES}.add_chain", AsyncMock(return_value=True)) as add:
            assert await admin.add_chain(state, 10, " optimistic-ethereum ") is True
        assert add.await_args.args[1:] == (10, "optimistic-ethereum")

    async def test_existing(self, state):
        with patch(f"{QUERIES}.add_chain", AsyncMock(return_value=False)):
            assert await admin.add_chain(state, 1, "ethereum") is False

    @pytest.mark.parametrize(("chainid", "name"), [(-1, "ethereum"), (1, "  ")])
    async def test_invalid(self, state, chainid, name):
        with patch(f"{QUERIES}.add_chain", AsyncMock()) as add, pytest.raises(ConfigurationError):
            await admin.add_chain(state, chainid, name)
        add.assert_not_awaited()
