"""Chain-log pipeline for chainindexer.

Indexes ERC-20 ``Transfer`` and ``Approval`` events of configured contracts
through an Etherscan-compatible explorer API. Each configured chain gets its
own [ChainLogSync][chainindexer.services.chainlogs.ChainLogSync], scheduled
as ``chainlogs_<chainid>`` with cursor stream ``chainlogs:<chainid>``.

The cursor is a block number. Items are blocks with at least one supported
log; enriching one costs a ``getblockreward`` call for the block timestamp,
after which the [LogDecoder][chainindexer.services.chainlogs.utils.LogDecoder]
turns the logs into rows of ``log_events``.

See Also:
    [SyncPipeline][chainindexer.services.common.pipeline.SyncPipeline]:
        Cursor advancement and rollback rules.
    [ChainLogConfig][chainindexer.services.chainlogs.ChainLogConfig]:
        Configuration model for this pipeline.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any, ClassVar

from chainindexer.core.exceptions import TransportError, ValidationError
from chainindexer.models.constants import Upstream, chain_log_pipeline, chain_log_stream
from chainindexer.models.fetch import FetchEmpty, FetchFailed, FetchOutcome, FetchSuccess
from chainindexer.models.records import BlockLogs, LogEvent, RawLog
from chainindexer.services.common.pipeline import SyncPipeline
from chainindexer.services.common.queries import fetch_log_keys_beyond, insert_log_events

from .configs import ChainLogConfig
from .utils import (
    Erc20EventDecoder,
    LogDecoder,
    block_reward_error,
    group_by_block,
    parse_block_timestamp,
    parse_log_page,
)


if TYPE_CHECKING:
    import aiohttp

    from chainindexer.core.pool import Pool
    from chainindexer.core.state import AppConfig
    from chainindexer.utils.http import RequestCustomizer, RequestOptions


def _query(params: dict[str, str]) -> RequestCustomizer:
    def customize(options: RequestOptions) -> None:
        options.params.update(params)

    return customize


class ChainLogSync(SyncPipeline[ChainLogConfig, BlockLogs, LogEvent]):
    """Block-cursor sync of one chain's contract events."""

    PIPELINE_NAME: ClassVar[str] = "chainlogs"
    CONFIG_CLASS: ClassVar[type[ChainLogConfig]] = ChainLogConfig
    UPSTREAM: ClassVar[Upstream] = Upstream.EXPLORER

    def __init__(
        self,
        state: AppConfig,
        config: ChainLogConfig,
        decoder: LogDecoder | None = None,
    ) -> None:
        super().__init__(state, config)
        self._decoder: LogDecoder = decoder or Erc20EventDecoder()

    @property
    def name(self) -> str:
        return chain_log_pipeline(self._config.chainid)

    @property
    def stream_id(self) -> str:
        return chain_log_stream(self._config.chainid)

    # -------------------------------------------------------------------------
    # Listing
    # -------------------------------------------------------------------------

    async def load_items(
        self, pool: Pool, session: aiohttp.ClientSession, cursor: int
    ) -> Sequence[BlockLogs]:
        """Supported logs of every contract after *cursor*, grouped by block.

        When a contract's listing stops at ``max_pages``, blocks past its last
        listed block are left for the next cycle so the cursor never passes
        logs that were not listed. The last listed block itself may be
        partial and is kept only when nothing earlier remains.

        Raises:
            TransportError: If a listing page could not be fetched.
        """
        from_block = max(cursor + 1, self._config.start_block)
        logs: list[RawLog] = []
        ceiling: int | None = None
        for contract in self._config.contracts:
            listed, truncated = await self._list_contract_logs(session, contract, from_block)
            logs.extend(listed)
            if truncated and listed:
                last = max(log.block_number for log in listed)
                ceiling = last if ceiling is None else min(ceiling, last)
        supported = [log for log in logs if self._decoder.supports(log) and log.block_number > cursor]
        if ceiling is not None:
            self._logger.info("log_listing_truncated", ceiling=ceiling)
            supported = [log for log in supported if log.block_number < ceiling] or [
                log for log in supported if log.block_number == ceiling
            ]
        return group_by_block(supported)

    async def _list_contract_logs(
        self, session: aiohttp.ClientSession, contract: str, from_block: int
    ) -> tuple[list[RawLog], bool]:
        """Logs of one contract and whether the listing stopped at ``max_pages``."""
        c = self._config
        logs: list[RawLog] = []
        for page in range(1, c.max_pages + 1):
            params = {
                "module": "logs",
                "action": "getLogs",
                "address": contract,
                "fromBlock": str(from_block),
                "toBlock": "latest",
                "page": str(page),
                "offset": str(c.page_size),
            }
            outcome = await self._fetch(session, c.explorer_api_url, _query(params))
            if isinstance(outcome, FetchFailed):
                raise TransportError(f"getLogs {contract} page {page}: {outcome.reason}")
            if isinstance(outcome, FetchEmpty):
                return logs, False
            try:
                batch = parse_log_page(outcome.payload)
            except ValidationError as e:
                raise TransportError(str(e)) from e
            logs.extend(batch)
            if len(batch) < c.page_size:
                return logs, False
        self._logger.warning("log_page_limit", contract=contract, max_pages=c.max_pages)
        return logs, True

    # -------------------------------------------------------------------------
    # Sync hooks
    # -------------------------------------------------------------------------

    async def preload_keys(self, pool: Pool, cursor: int) -> set[Any]:
        return await fetch_log_keys_beyond(pool, self._config.chainid, cursor)

    def is_known(self, item: BlockLogs, known: set[Any]) -> bool:
        return item.keys <= known

    async def fetch(self, session: aiohttp.ClientSession, item: BlockLogs) -> FetchOutcome:
        params = {"module": "block", "action": "getblockreward", "blockno": str(item.id)}
        outcome = await self._fetch(session, self._config.explorer_api_url, _query(params))
        if isinstance(outcome, FetchSuccess):
            error = block_reward_error(outcome.payload)
            if error is not None:
                return FetchFailed(f"getblockreward {item.id}: {error}")
        return outcome

    def build_records(self, item: BlockLogs, payload: Any) -> Iterable[LogEvent]:
        timestamp = parse_block_timestamp(payload)
        events: list[LogEvent] = []
        for log in item.logs:
            try:
                events.append(self._decoder.decode(log, self._config.chainid, timestamp))
            except ValidationError as e:
                self._logger.debug("log_undecodable", block=item.id, log_index=log.log_index, error=str(e))
        if not events:
            raise ValidationError(f"block {item.id}: no decodable logs")
        return events

    async def persist(self, pool: Pool, records: list[LogEvent]) -> None:
        await insert_log_events(pool, records)
