"""
Unit tests for services.common.pipeline module.

Tests:
- Consecutive fetch failures roll the cursor back and abort the cycle
- Failures below the threshold do not abort; a drained cycle resets to 0
- Resume positions when rescan_on_drain is disabled
- Known items skipped without a fetch
- Empty and invalid responses reset the streak without writing
- Persist failures counted without aborting
- Cursor written to the store before it is published to shared state
- Stored cursor read at the start of every cycle
- FetchingPipeline routes through the upstream's shared limiter
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chainindexer.core.exceptions import ConnectionPoolError, SyncAbortedError, ValidationError
from chainindexer.core.ratelimit import RateLimiter
from chainindexer.core.state import AppConfig
from chainindexer.models.constants import Upstream
from chainindexer.models.cursor import SyncCursor
from chainindexer.models.fetch import FetchEmpty, FetchFailed, FetchOutcome, FetchSuccess
from chainindexer.services.common.configs import SyncConfig
from chainindexer.services.common.pipeline import SyncPipeline
from tests.conftest import make_response


STREAM = "test_stream"


@dataclass(frozen=True)
class _Item:
    id: int


class _ScriptedSync(SyncPipeline[SyncConfig, _Item, dict[str, Any]]):
    """SyncPipeline whose upstream answers come from a per-id script."""

    PIPELINE_NAME = "scripted"
    STREAM = STREAM
    UPSTREAM = Upstream.EXPLORER

    def __init__(
        self,
        state: AppConfig,
        config: SyncConfig,
        *,
        items: list[int],
        outcomes: dict[int, FetchOutcome] | None = None,
        known: set[int] | None = None,
        persist_error: BaseException | None = None,
    ) -> None:
        super().__init__(state, config)
        self.items = [_Item(i) for i in items]
        self.outcomes = outcomes or {}
        self.known = known or set()
        self.persist_error = persist_error
        self.fetched: list[int] = []
        self.persisted: list[int] = []
        self.loaded_from: int | None = None

    async def load_items(self, pool, session, cursor):
        self.loaded_from = cursor
        return [item for item in self.items if item.id > cursor]

    async def preload_keys(self, pool, cursor):
        return set(self.known)

    def is_known(self, item, known):
        return item.id in known

    async def fetch(self, session, item):
        self.fetched.append(item.id)
        return self.outcomes.get(item.id, FetchSuccess({"id": item.id}))

    def build_records(self, item, payload):
        if "id" not in payload:
            raise ValidationError("missing id")
        return [payload]

    async def persist(self, pool, records):
        if self.persist_error is not None:
            raise self.persist_error
        self.persisted.extend(r["id"] for r in records)


@pytest.fixture
def upsert_cursor():
    with patch(
        "chainindexer.services.common.pipeline.upsert_cursor", new_callable=AsyncMock
    ) as mock:
        yield mock


def _failed() -> FetchFailed:
    return FetchFailed("HTTP 503", attempts=3)


# =============================================================================
# Failure Streaks
# =============================================================================


class TestAbort:
    """Rollback after too many consecutive fetch failures."""

    async def test_rolls_back_to_before_first_failure(self, state, upsert_cursor):
        """Items 3, 4, 5 fail with threshold 2: cursor ends at 2."""
        pipeline = _ScriptedSync(
            state,
            SyncConfig(max_consecutive_failures=2),
            items=[1, 2, 3, 4, 5],
            outcomes={3: _failed(), 4: _failed(), 5: _failed()},
        )

        with pytest.raises(SyncAbortedError) as exc_info:
            await pipeline.sync(MagicMock())

        assert exc_info.value.first_failure_id == 3
        assert exc_info.value.cursor == 2
        assert await state.cursor(STREAM) == 2
        assert pipeline.persisted == [1, 2]
        written = upsert_cursor.await_args.args[1]
        assert (written.stream_id, written.position) == (STREAM, 2)

    async def test_aborts_before_later_items(self, state, upsert_cursor):
        pipeline = _ScriptedSync(
            state,
            SyncConfig(max_consecutive_failures=1),
            items=[10, 20, 30, 40],
            outcomes={20: _failed(), 30: _failed()},
        )

        with pytest.raises(SyncAbortedError):
            await pipeline.sync(MagicMock())

        assert pipeline.fetched == [10, 20, 30]
        assert await state.cursor(STREAM) == 19

    async def test_zero_threshold_aborts_on_first_failure(self, state, upsert_cursor):
        pipeline = _ScriptedSync(
            state, SyncConfig(max_consecutive_failures=0), items=[7], outcomes={7: _failed()}
        )

        with pytest.raises(SyncAbortedError):
            await pipeline.sync(MagicMock())

        assert await state.cursor(STREAM) == 6

    async def test_rollback_includes_earlier_persist_failure(self, state, upsert_cursor):
        """A write failure before the streak keeps its item in the retry range."""

        class _FailFirstPersist(_ScriptedSync):
            async def persist(self, pool, records):
                if records[0]["id"] == 1:
                    raise ConnectionPoolError("deadlock")
                await super().persist(pool, records)

        pipeline = _FailFirstPersist(
            state,
            SyncConfig(max_consecutive_failures=1),
            items=[1, 2, 3, 4],
            outcomes={3: _failed(), 4: _failed()},
        )

        with pytest.raises(SyncAbortedError) as exc_info:
            await pipeline.sync(MagicMock())

        assert exc_info.value.first_failure_id == 3
        assert exc_info.value.cursor == 0


class TestNoAbort:
    """Streaks that stay within the threshold."""

    async def test_interrupted_streak_completes(self, state, upsert_cursor):
        pipeline = _ScriptedSync(
            state,
            SyncConfig(max_consecutive_failures=2),
            items=[1, 2, 3, 4, 5, 6],
            outcomes={1: _failed(), 2: _failed(), 4: _failed(), 5: _failed()},
        )

        progress = await pipeline.sync(MagicMock())

        assert progress.failed == 4
        assert progress.upserted == 2
        assert progress.cursor_end == 0
        assert await state.cursor(STREAM) == 0

    async def test_empty_resets_streak(self, state, upsert_cursor):
        pipeline = _ScriptedSync(
            state,
            SyncConfig(max_consecutive_failures=1),
            items=[1, 2, 3],
            outcomes={1: _failed(), 2: FetchEmpty(), 3: _failed()},
        )

        progress = await pipeline.sync(MagicMock())

        assert progress.empty == 1
        assert progress.failed == 2
        assert pipeline.persisted == []


# =============================================================================
# Cursor Positions
# =============================================================================


class TestCursor:
    """Cursor reads and writes."""

    async def test_starts_beyond_stored_cursor(self, state, upsert_cursor):
        await state.set_cursor(STREAM, 2)
        pipeline = _ScriptedSync(state, SyncConfig(), items=[1, 2, 3, 4])

        progress = await pipeline.sync(MagicMock())

        assert pipeline.loaded_from == 2
        assert pipeline.fetched == [3, 4]
        assert progress.cursor_start == 2
        assert progress.total == 2

    async def test_resume_position_without_rescan(self, state, upsert_cursor):
        pipeline = _ScriptedSync(
            state, SyncConfig(rescan_on_drain=False), items=[5, 8, 13]
        )

        await pipeline.sync(MagicMock())

        assert await state.cursor(STREAM) == 13

    async def test_resume_stops_before_failed_item(self, state, upsert_cursor):
        pipeline = _ScriptedSync(
            state,
            SyncConfig(rescan_on_drain=False, max_consecutive_failures=3),
            items=[5, 8, 13],
            outcomes={8: _failed()},
        )

        await pipeline.sync(MagicMock())

        assert await state.cursor(STREAM) == 7

    async def test_resume_keeps_cursor_when_nothing_new(self, state, upsert_cursor):
        await state.set_cursor(STREAM, 13)
        pipeline = _ScriptedSync(state, SyncConfig(rescan_on_drain=False), items=[5, 8, 13])

        await pipeline.sync(MagicMock())

        assert await state.cursor(STREAM) == 13

    async def test_stored_cursor_wins_over_state(self, state, upsert_cursor):
        """A reset written to the table by another process is picked up."""
        await state.set_cursor(STREAM, 3)
        pipeline = _ScriptedSync(state, SyncConfig(rescan_on_drain=False), items=[1, 2, 3, 4])

        with patch(
            "chainindexer.services.common.pipeline.get_cursor",
            AsyncMock(return_value=SyncCursor(STREAM, 1)),
        ):
            progress = await pipeline.sync(MagicMock())

        assert pipeline.loaded_from == 1
        assert progress.cursor_start == 1
        assert pipeline.fetched == [2, 3, 4]
        assert await state.cursor(STREAM) == 4

    async def test_missing_row_keeps_state_cursor(self, state, upsert_cursor, mock_pool):
        await state.set_cursor(STREAM, 3)
        pipeline = _ScriptedSync(state, SyncConfig(), items=[1, 2, 3, 4])

        await pipeline.sync(MagicMock())

        assert pipeline.loaded_from == 3
        mock_pool._mock_connection.fetchrow.assert_awaited_once()
        assert mock_pool._mock_connection.fetchrow.await_args.args[1] == STREAM

    async def test_store_written_before_state(self, state, upsert_cursor):
        order: list[str] = []
        upsert_cursor.side_effect = lambda *_: order.append("store")
        state.set_cursor = AsyncMock(side_effect=lambda *_: order.append("state"))

        await _ScriptedSync(state, SyncConfig(), items=[1]).sync(MagicMock())

        assert order == ["store", "state"]


# =============================================================================
# Item Handling
# =============================================================================


class TestItems:
    """Per-item outcomes."""

    async def test_known_items_skipped(self, state, upsert_cursor):
        pipeline = _ScriptedSync(state, SyncConfig(), items=[1, 2, 3], known={2})

        progress = await pipeline.sync(MagicMock())

        assert pipeline.fetched == [1, 3]
        assert progress.skipped == 1
        assert progress.upserted == 2

    async def test_invalid_payload_counted(self, state, upsert_cursor):
        pipeline = _ScriptedSync(
            state, SyncConfig(), items=[1, 2], outcomes={1: FetchSuccess({"name": "no id"})}
        )

        progress = await pipeline.sync(MagicMock())

        assert progress.invalid == 1
        assert pipeline.persisted == [2]

    async def test_persist_failure_counted_not_fatal(self, state, upsert_cursor):
        pipeline = _ScriptedSync(
            state, SyncConfig(), items=[1, 2, 3], persist_error=OSError("connection reset")
        )

        progress = await pipeline.sync(MagicMock())

        assert progress.persist_failed == 3
        assert progress.upserted == 0
        assert progress.cursor_end == 0

    async def test_unexpected_persist_error_propagates(self, state, upsert_cursor):
        pipeline = _ScriptedSync(
            state, SyncConfig(), items=[1], persist_error=KeyError("bug")
        )

        with pytest.raises(KeyError):
            await pipeline.sync(MagicMock())

    async def test_no_items(self, state, upsert_cursor):
        progress = await _ScriptedSync(state, SyncConfig(), items=[]).sync(MagicMock())
        assert progress.total == 0
        upsert_cursor.assert_awaited_once()


# =============================================================================
# Shared Limiter
# =============================================================================


class TestFetchingPipeline:
    """_fetch() wiring."""

    async def test_uses_shared_limiter_and_budget(self, state):
        limiter = RateLimiter(5, 1.0, name="explorer")
        state._limiters[Upstream.EXPLORER] = limiter
        pipeline = _ScriptedSync(state, SyncConfig(), items=[])

        with patch(
            "chainindexer.services.common.pipeline.fetch_with_retry",
            AsyncMock(return_value=FetchEmpty()),
        ) as fetch:
            outcome = await pipeline._fetch(MagicMock(), "https://explorer.test/x")

        assert isinstance(outcome, FetchEmpty)
        kwargs = fetch.await_args.kwargs
        assert kwargs["limiter"] is limiter
        assert kwargs["max_attempts"] == 5
        assert kwargs["max_consecutive_failures"] == 3
        await limiter.close()

    async def test_two_pipelines_share_one_limiter(self, state, make_session):
        """One 1/s budget serves both pipelines; grants stay a full spacing apart."""
        limiter = RateLimiter(1, 0.05, name="explorer")
        state._limiters[Upstream.EXPLORER] = limiter
        first = _ScriptedSync(state, SyncConfig(), items=[])
        second = _ScriptedSync(state, SyncConfig(), items=[])
        grants: list[float] = []

        original_acquire = limiter.acquire

        async def recording_acquire() -> None:
            await original_acquire()
            grants.append(limiter._last_grant)  # type: ignore[arg-type]

        limiter.acquire = recording_acquire  # type: ignore[method-assign]

        async def run(pipeline: _ScriptedSync) -> None:
            session = make_session(*(make_response({"ok": 1}) for _ in range(3)))
            for _ in range(3):
                await pipeline._fetch(session, "https://explorer.test/x")

        await asyncio.gather(run(first), run(second))

        assert len(grants) == 6
        ordered = sorted(grants)
        assert all(b - a >= limiter.spacing - 1e-9 for a, b in zip(ordered, ordered[1:], strict=False))
        await limiter.close()
