"""Administrative operations on a running indexer.

Each function changes one piece of shared state. Mutations go through
[AppConfig][chainindexer.core.state.AppConfig] (and, for cursors and
chains, the database) so running pipelines pick them up at their next
access without a restart.

Errors surface synchronously to the caller:
[CutoverValidationError][chainindexer.core.exceptions.CutoverValidationError]
for a rejected primary and
[ConfigurationError][chainindexer.core.exceptions.ConfigurationError] for
invalid arguments.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from urllib.parse import urlparse

from chainindexer.core.exceptions import ConfigurationError
from chainindexer.core.logger import Logger
from chainindexer.models.cursor import SyncCursor
from chainindexer.services.common import queries


if TYPE_CHECKING:
    from chainindexer.core.scheduler import Scheduler
    from chainindexer.core.state import AppConfig, StoreConnection
    from chainindexer.core.store import PrimaryStoreManager
    from chainindexer.models.constants import Upstream


_logger = Logger("admin")


async def switch_primary(manager: PrimaryStoreManager, url: str) -> StoreConnection:
    """Validate *url* and make it the active primary.

    Raises:
        CutoverValidationError: The candidate was rejected; the active
            connection is unchanged.
    """
    return await manager.switch_primary(url)


async def reset_cursor(state: AppConfig, stream_id: str, position: int = 0) -> None:
    """Move a stream's cursor, in the store first and then in shared state.

    The owning pipeline reads the new position at its next cycle.

    Raises:
        ConfigurationError: If *position* is negative.
    """
    if position < 0:
        raise ConfigurationError(f"cursor position must be non-negative, got {position}")
    pool = await state.pool()
    await queries.upsert_cursor(pool, SyncCursor(stream_id, position))
    await state.set_cursor(stream_id, position)
    _logger.info("cursor_reset", stream=stream_id, cursor=position)


async def set_interval(
    state: AppConfig, pipeline: str, seconds: float, *, scheduler: Scheduler | None = None
) -> None:
    """Change how long *pipeline* sleeps between cycles.

    Raises:
        ConfigurationError: If *seconds* is not positive, or *scheduler* is
            given and has no pipeline named *pipeline*.
    """
    if scheduler is not None and pipeline not in scheduler.pipelines:
        raise ConfigurationError(f"unknown pipeline: {pipeline}")
    await state.set_interval(pipeline, seconds)


async def rotate_credential(state: AppConfig, upstream: Upstream, value: str) -> None:
    """Replace the API key of *upstream*; pipelines send it from their next cycle.

    Raises:
        ConfigurationError: If *value* is blank.
    """
    await state.set_credential(upstream, value)


async def add_explorer_endpoint(state: AppConfig, chainid: int, url: str) -> None:
    """Register the explorer ``addresses`` endpoint used to verify *chainid* contracts.

    Raises:
        ConfigurationError: If *chainid* is not positive or *url* is not
            an absolute http(s) URL.
    """
    if chainid <= 0:
        raise ConfigurationError(f"chainid must be positive, got {chainid}")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigurationError(f"explorer endpoint must be an http(s) URL, got {url!r}")
    await state.add_explorer_endpoint(chainid, url)


async def add_chain(state: AppConfig, chainid: int, name: str) -> bool:
    """Add a supported chain under its registry platform *name*.

    Returns:
        ``True`` if the chain was added, ``False`` if it already existed.

    Raises:
        ConfigurationError: If *chainid* is not positive or *name* is blank.
    """
    if chainid <= 0:
        raise ConfigurationError(f"chainid must be positive, got {chainid}")
    if not name.strip():
        raise ConfigurationError("chain name must not be empty")
    pool = await state.pool()
    added = await queries.add_chain(pool, chainid, name.strip())
    _logger.info("chain_added" if added else "chain_exists", chainid=chainid, name=name.strip())
    return added
