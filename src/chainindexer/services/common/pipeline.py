"""Resumable cursor-driven sync over a numbered stream.

A stream is an ordered, gappy sequence of work items identified by an
increasing integer id (a registry row id or a block number). One
[SyncPipeline][chainindexer.services.common.pipeline.SyncPipeline] cycle:

1. Reads the stream cursor from the ``sync_cursor`` table (publishing it to
   [AppConfig][chainindexer.core.state.AppConfig] when it moved) and loads
   every item with ``id > cursor``, ascending.
2. Preloads the natural keys already stored (one query).
3. Walks the items strictly in id order. Known items are skipped. The
   rest are enriched through one
   [fetch_with_retry()][chainindexer.utils.http.fetch_with_retry] call:

   - ``FetchSuccess`` with the required fields: upsert, reset the streak.
   - ``FetchSuccess`` missing required fields, or ``FetchEmpty``: no
     write, reset the streak.
   - ``FetchFailed``: extend the streak. Once the streak exceeds
     ``max_consecutive_failures`` the cursor is rolled back to just before
     the first item that still needs a retry and the cycle raises
     [SyncAbortedError][chainindexer.core.exceptions.SyncAbortedError].

4. A completed walk resets the cursor to ``0`` so the next cycle rescans
   from the start; the key preload makes that cheap.

The cursor is written to the ``sync_cursor`` table first and then published
to the shared state, so a crash never leaves the state ahead of the store.

Subclasses fill in the hooks: ``load_items``, ``preload_keys``,
``is_known``, ``fetch``, ``build_records`` and ``persist`` (and optionally
``prepare``).
"""

from __future__ import annotations

import time
from abc import abstractmethod
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Generic, Protocol, TypeVar

import aiohttp
import asyncpg

from chainindexer.core.base_pipeline import BasePipeline
from chainindexer.core.exceptions import (
    ConnectionPoolError,
    PersistenceError,
    SyncAbortedError,
    ValidationError,
)
from chainindexer.models.cursor import SyncCursor
from chainindexer.models.fetch import FetchEmpty, FetchFailed, FetchOutcome, FetchSuccess
from chainindexer.utils.http import RequestCustomizer, fetch_with_retry

from .configs import FetchConfig, FetchingPipelineConfig, SyncConfig
from .queries import get_cursor, upsert_cursor


if TYPE_CHECKING:
    from chainindexer.core.pool import Pool
    from chainindexer.models.constants import Upstream


class SyncItem(Protocol):
    """A work item: anything with an integer ``id``."""

    @property
    def id(self) -> int: ...


ItemT = TypeVar("ItemT", bound=SyncItem)
RecordT = TypeVar("RecordT")
FetchConfigT = TypeVar("FetchConfigT", bound=FetchingPipelineConfig)
SyncConfigT = TypeVar("SyncConfigT", bound=SyncConfig)

PERSIST_ERRORS: tuple[type[Exception], ...] = (asyncpg.PostgresError, ConnectionPoolError, OSError)
"""Database failures a single item write may raise; they never end a cycle."""


# ---------------------------------------------------------------------------
# Cycle Progress
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class SyncProgress:
    """Counters of one sync cycle.

    Attributes:
        started_at: Unix timestamp the cycle started at.
        cursor_start: Cursor position read at the start.
        total: Items beyond the cursor.
        skipped: Items whose key was already stored.
        upserted: Items written.
        empty: Items whose upstream answered with no data.
        invalid: Items whose response lacked required fields.
        failed: Items whose fetch failed.
        persist_failed: Items whose write failed.
        cursor_end: Cursor position published at the end.
    """

    started_at: float = field(default_factory=time.time)
    _monotonic_start: float = field(default_factory=time.monotonic, repr=False)
    cursor_start: int = 0
    total: int = 0
    skipped: int = 0
    upserted: int = 0
    empty: int = 0
    invalid: int = 0
    failed: int = 0
    persist_failed: int = 0
    cursor_end: int = 0

    @property
    def elapsed(self) -> float:
        """Seconds since the cycle started, rounded to 1 decimal."""
        return round(time.monotonic() - self._monotonic_start, 1)


class _Streak:
    """Failure bookkeeping for one cycle."""

    __slots__ = ("count", "earliest_unfinished", "first_failure_id")

    def __init__(self) -> None:
        self.count = 0
        self.first_failure_id: int | None = None
        self.earliest_unfinished: int | None = None

    def fail(self, item_id: int) -> None:
        self.count += 1
        if self.first_failure_id is None:
            self.first_failure_id = item_id
        self.mark_unfinished(item_id)

    def mark_unfinished(self, item_id: int) -> None:
        if self.earliest_unfinished is None:
            self.earliest_unfinished = item_id

    def reset(self) -> None:
        self.count = 0
        self.first_failure_id = None

    def rollback_position(self) -> int:
        """Cursor that re-includes every item still needing a retry."""
        candidates = [i for i in (self.first_failure_id, self.earliest_unfinished) if i is not None]
        return max(min(candidates) - 1, 0)


# ---------------------------------------------------------------------------
# FetchingPipeline
# ---------------------------------------------------------------------------


class FetchingPipeline(BasePipeline[FetchConfigT]):
    """Pipeline whose upstream calls share one rate limiter.

    Class Attributes:
        UPSTREAM: Upstream whose shared
            [RateLimiter][chainindexer.core.ratelimit.RateLimiter] every fetch
            goes through.
    """

    UPSTREAM: ClassVar[Upstream]

    async def _fetch(
        self,
        session: aiohttp.ClientSession,
        url: str,
        customize: RequestCustomizer | None = None,
        *,
        fetch_config: FetchConfig | None = None,
    ) -> FetchOutcome:
        """One logical upstream call with this pipeline's retry budget."""
        config = fetch_config or self._config.fetch
        return await fetch_with_retry(
            session,
            url,
            customize,
            limiter=self._state.limiter(self.UPSTREAM),
            **config.as_kwargs(),
        )


# ---------------------------------------------------------------------------
# SyncPipeline
# ---------------------------------------------------------------------------


class SyncPipeline(FetchingPipeline[SyncConfigT], Generic[SyncConfigT, ItemT, RecordT]):
    """Abstract cursor-driven sync of one stream.

    Class Attributes:
        STREAM: Cursor stream id (a
            [StreamName][chainindexer.models.constants.StreamName] value).
            Per-chain subclasses override
            [stream_id][chainindexer.services.common.pipeline.SyncPipeline.stream_id].
    """

    STREAM: ClassVar[str]

    @property
    def stream_id(self) -> str:
        return self.STREAM

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    async def prepare(self, pool: Pool, session: aiohttp.ClientSession) -> None:  # noqa: B027
        """Load per-cycle context (lookup tables) before items are listed."""

    @abstractmethod
    async def load_items(self, pool: Pool, session: aiohttp.ClientSession, cursor: int) -> Sequence[ItemT]:
        """Every item with ``id > cursor``, in ascending id order."""

    @abstractmethod
    async def preload_keys(self, pool: Pool, cursor: int) -> set[Any]:
        """Natural keys already present in the destination."""

    @abstractmethod
    def is_known(self, item: ItemT, known: set[Any]) -> bool:
        """Whether *item* is already fully stored."""

    @abstractmethod
    async def fetch(self, session: aiohttp.ClientSession, item: ItemT) -> FetchOutcome:
        """Fetch the enrichment data of *item* (one logical call)."""

    @abstractmethod
    def build_records(self, item: ItemT, payload: Any) -> Iterable[RecordT]:
        """Turn a successful payload into records.

        Raises:
            ValidationError: If the payload lacks required fields.
        """

    @abstractmethod
    async def persist(self, pool: Pool, records: list[RecordT]) -> None:
        """Write the records of one item idempotently."""

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Run one cycle with a session scoped to it."""
        async with aiohttp.ClientSession() as session:
            await self.sync(session)

    async def sync(self, session: aiohttp.ClientSession) -> SyncProgress:
        """Walk the stream once.

        Returns:
            The counters of the completed cycle.

        Raises:
            SyncAbortedError: After too many consecutive fetch failures.
                The cursor has already been rolled back.
        """
        pool = await self._state.pool()
        cursor = await self._load_cursor(pool)
        progress = SyncProgress(cursor_start=cursor)

        await self.prepare(pool, session)
        items = await self.load_items(pool, session, cursor)
        known = await self.preload_keys(pool, cursor)
        progress.total = len(items)
        self._logger.info("sync_started", stream=self.stream_id, cursor=cursor, items=len(items))

        streak = _Streak()
        for item in items:
            if self.is_known(item, known):
                progress.skipped += 1
                continue

            outcome = await self.fetch(session, item)

            if isinstance(outcome, FetchFailed):
                progress.failed += 1
                streak.fail(item.id)
                self.inc_counter("fetch_failed")
                self._logger.warning(
                    "item_fetch_failed",
                    stream=self.stream_id,
                    item=item.id,
                    reason=outcome.reason,
                    streak=streak.count,
                )
                if streak.count > self._config.max_consecutive_failures:
                    await self._abort(streak, outcome.reason, progress)
                continue

            streak.reset()

            if isinstance(outcome, FetchEmpty):
                progress.empty += 1
                self.inc_counter("fetch_empty")
                continue

            self.inc_counter("fetch_success")
            await self._handle_success(pool, item, outcome, progress, streak)

        final = 0 if self._config.rescan_on_drain else self._resume_position(items, streak, cursor)
        await self._publish_cursor(pool, final)
        progress.cursor_end = final
        self._logger.info(
            "sync_completed",
            stream=self.stream_id,
            total=progress.total,
            skipped=progress.skipped,
            upserted=progress.upserted,
            empty=progress.empty,
            invalid=progress.invalid,
            failed=progress.failed,
            persist_failed=progress.persist_failed,
            cursor=final,
            elapsed_s=progress.elapsed,
        )
        return progress

    async def _handle_success(
        self,
        pool: Pool,
        item: ItemT,
        outcome: FetchSuccess,
        progress: SyncProgress,
        streak: _Streak,
    ) -> None:
        try:
            records = list(self.build_records(item, outcome.payload))
        except ValidationError as e:
            progress.invalid += 1
            self.inc_counter("invalid")
            self._logger.debug("item_invalid", stream=self.stream_id, item=item.id, error=str(e))
            return

        try:
            await self._persist(pool, records)
        except PersistenceError as e:
            progress.persist_failed += 1
            streak.mark_unfinished(item.id)
            self.inc_counter("persist_failed")
            self._logger.error("item_persist_failed", stream=self.stream_id, item=item.id, error=str(e))
            return

        progress.upserted += 1
        self.inc_counter("upserted")

    async def _persist(self, pool: Pool, records: list[RecordT]) -> None:
        """Call ``persist`` and wrap database failures in ``PersistenceError``."""
        if not records:
            return
        try:
            await self.persist(pool, records)
        except PERSIST_ERRORS as e:
            raise PersistenceError(f"{self.stream_id}: {e}") from e

    async def _load_cursor(self, pool: Pool) -> int:
        """Stored cursor of this stream, published to shared state when it differs.

        The ``sync_cursor`` row wins over the in-memory position, so a reset
        written by another process takes effect at the next cycle.
        """
        stored = await get_cursor(pool, self.stream_id)
        current = await self._state.cursor(self.stream_id)
        if stored is None or stored.position == current:
            return current
        await self._state.set_cursor(self.stream_id, stored.position)
        self._logger.info(
            "cursor_reloaded", stream=self.stream_id, previous=current, cursor=stored.position
        )
        return stored.position

    @staticmethod
    def _resume_position(items: Sequence[ItemT], streak: _Streak, cursor: int) -> int:
        """Furthest position every earlier item is settled for, when not rescanning."""
        if streak.earliest_unfinished is not None:
            return max(streak.earliest_unfinished - 1, 0)
        if items:
            return items[-1].id
        return cursor

    async def _abort(self, streak: _Streak, reason: str, progress: SyncProgress) -> None:
        rollback = streak.rollback_position()
        first_failure_id = streak.first_failure_id if streak.first_failure_id is not None else 0
        # Re-read the pool: the write must go to the primary active right now
        pool = await self._state.pool()
        await self._publish_cursor(pool, rollback)
        progress.cursor_end = rollback
        self.inc_counter("cycles_aborted")
        self._logger.error(
            "cursor_rolled_back",
            stream=self.stream_id,
            first_failure_id=first_failure_id,
            cursor=rollback,
            streak=streak.count,
            reason=reason,
        )
        raise SyncAbortedError(self.stream_id, first_failure_id, rollback, reason)

    async def _publish_cursor(self, pool: Pool, position: int) -> None:
        await upsert_cursor(pool, SyncCursor(self.stream_id, position))
        await self._state.set_cursor(self.stream_id, position)
        self.set_gauge("cursor", position)

