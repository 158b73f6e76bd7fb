"""CLI entry point for chainindexer.

Runs the pipelines under one scheduler, or performs a one-off
administrative task against the configured database.

Examples:
    ```bash
    python -m chainindexer run
    python -m chainindexer run --pipeline forex --once
    python -m chainindexer check-primary postgresql://writer@db-2/indexer
    python -m chainindexer reset-cursor token_metadata --position 0
    python -m chainindexer init-db
    ```
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, NamedTuple

import asyncpg
import pydantic

from chainindexer.core import (
    AppConfig,
    BasePipeline,
    ChainIndexerError,
    IndexerConfig,
    Logger,
    Pool,
    PrimaryStoreManager,
    Scheduler,
    StoreConnection,
    StructuredFormatter,
    load_yaml,
    start_metrics_server,
)
from chainindexer.models.constants import PipelineName, Upstream
from chainindexer.services import admin
from chainindexer.services.chainlogs import ChainLogConfig, ChainLogSync
from chainindexer.services.common.queries import (
    fetch_all_cursors,
    initialize_schema,
    seed_default_chains,
)
from chainindexer.services.forex import ForexSync
from chainindexer.services.marketdata import MarketDataSync
from chainindexer.services.metadata import MetadataPipeline


CONFIG_PATH = Path("config") / "indexer.yaml"


class PipelineEntry(NamedTuple):
    """Registry entry mapping a pipeline name to its class and required API keys."""

    cls: type[BasePipeline[Any]]
    credentials: tuple[Upstream, ...]


PIPELINE_REGISTRY: dict[str, PipelineEntry] = {
    PipelineName.METADATA: PipelineEntry(MetadataPipeline, (Upstream.COINGECKO,)),
    PipelineName.MARKETDATA: PipelineEntry(MarketDataSync, (Upstream.COINGECKO,)),
    PipelineName.FOREX: PipelineEntry(ForexSync, (Upstream.OPENEXCHANGERATES,)),
}

logger = Logger("cli")


# =============================================================================
# Setup
# =============================================================================


def setup_logging(level: str) -> None:
    """Configure the root logger with structured formatting.

    Installs a ``StructuredFormatter`` on the root handler so that all
    log output -- from both ``Logger`` (with ``structured_kv`` extra) and
    plain ``logging.getLogger()`` calls in models/utils -- is unified as
    ``level name message key=value ...``.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level))


def load_config(path: Path) -> IndexerConfig:
    """Load the indexer configuration; defaults apply if the file does not exist.

    Raises:
        pydantic.ValidationError: If the file (or the environment it
            refers to) is invalid.
    """
    if not path.exists():
        logger.warning("config_not_found", path=str(path))
        return IndexerConfig()
    return IndexerConfig(**load_yaml(str(path)))


def build_pipelines(
    config: IndexerConfig, state: AppConfig, only: str | None = None
) -> list[BasePipeline[Any]]:
    """Instantiate every enabled pipeline, or only the one named *only*.

    Chain-log pipelines are built once per ``chainlogs`` entry. API keys of
    the built pipelines are checked before anything starts.

    Raises:
        ConfigurationError: If a required API key is missing.
        pydantic.ValidationError: If a pipeline section is invalid.
    """
    pipelines: list[BasePipeline[Any]] = []
    required: set[Upstream] = set()

    for name, entry in PIPELINE_REGISTRY.items():
        if only is not None and only != name:
            continue
        pipeline = entry.cls.from_dict(config.pipelines.get(name, {}), state=state)
        if pipeline.config.enabled or only == name:
            pipelines.append(pipeline)
            required.update(entry.credentials)

    for section in config.chainlogs:
        chainlog = ChainLogSync(state, ChainLogConfig(**section))
        if only is not None and only != chainlog.name:
            continue
        if chainlog.config.enabled or only == chainlog.name:
            pipelines.append(chainlog)

    state.require_credentials(required)
    return pipelines


async def open_state(config: IndexerConfig, *, with_cursors: bool = True) -> AppConfig:
    """Connect the primary pool and build the shared state.

    Stored cursor positions are loaded unless *with_cursors* is false (the
    schema may not exist yet).
    """
    pool = Pool(config.pool)
    await pool.connect()
    state = AppConfig.from_config(config, StoreConnection(pool.url, pool))
    if with_cursors:
        await state.load_cursors(await fetch_all_cursors(pool))
    return state


async def close_state(state: AppConfig) -> None:
    pool = await state.pool()
    await state.close()
    await pool.close()


# =============================================================================
# Commands
# =============================================================================


async def run_pipelines(
    config: IndexerConfig, state: AppConfig, *, only: str | None, once: bool
) -> int:
    """Run pipelines in one-shot or continuous mode.

    In one-shot mode every selected pipeline runs a single cycle and the
    exit code reflects whether all of them succeeded. In continuous mode a
    Prometheus metrics server is started and the scheduler runs until a
    shutdown signal is received.

    Returns:
        Exit code: 0 for success, 1 for failure.
    """
    if await state.is_initializing_metadata():
        seeded = await seed_default_chains(await state.pool())
        logger.info("default_chains_seeded", inserted=seeded)

    pipelines = build_pipelines(config, state, only)
    if not pipelines:
        logger.error("no_pipelines", pipeline=only or "")
        return 1

    scheduler = Scheduler(state, metrics_enabled=config.metrics.enabled)
    for pipeline in pipelines:
        scheduler.register(pipeline)

    # One-shot mode: single cycle each, no metrics server
    if once:
        results = [await scheduler.run_once(p.name) for p in pipelines]
        return 0 if all(results) else 1

    # Continuous mode: metrics server + indefinite operation
    metrics_server = await start_metrics_server(config.metrics)
    if config.metrics.enabled:
        logger.info(
            "metrics_server_started",
            host=config.metrics.host,
            port=config.metrics.port,
            path=config.metrics.path,
        )

    main_task = asyncio.current_task()

    # Signal handling for graceful shutdown
    def handle_signal(sig: signal.Signals) -> None:
        logger.info("shutdown_signal", signal=sig.name)
        if main_task is not None:
            main_task.cancel()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        await scheduler.start_all()
    except asyncio.CancelledError:
        logger.info("shutdown_complete")
    finally:
        await metrics_server.stop()
        if config.metrics.enabled:
            logger.info("metrics_server_stopped")
    return 0


async def check_primary(config: IndexerConfig, state: AppConfig, url: str) -> int:
    """Run the cutover checks against *url* without switching."""
    manager = PrimaryStoreManager(state, retire_after=config.cutover.retire_after)
    await manager.validate_candidate(url)
    return 0


async def reset_cursor(state: AppConfig, stream: str, position: int) -> int:
    await admin.reset_cursor(state, stream, position)
    return 0


async def init_db(state: AppConfig) -> int:
    """Apply the bundled schema and seed the default chains."""
    pool = await state.pool()
    await initialize_schema(pool)
    seeded = await seed_default_chains(pool)
    logger.info("schema_initialized", chains_seeded=seeded)
    return 0


# =============================================================================
# Argument Parsing
# =============================================================================


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="chainindexer",
        description="chainindexer pipeline runner",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=CONFIG_PATH,
        help=f"Indexer config path (default: {CONFIG_PATH})",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Log level (default: INFO)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Run the pipelines")
    run.add_argument(
        "--pipeline",
        help="Run only this pipeline (e.g. forex, chainlogs_8453)",
    )
    run.add_argument(
        "--once",
        action="store_true",
        help="Run one cycle and exit (default: run continuously)",
    )

    check = commands.add_parser("check-primary", help="Validate a candidate primary database")
    check.add_argument("url", help="Candidate DSN")

    reset = commands.add_parser("reset-cursor", help="Move a stream cursor")
    reset.add_argument("stream", help="Stream id (e.g. token_metadata, chainlogs:8453)")
    reset.add_argument("--position", type=int, default=0, help="New position (default: 0)")

    commands.add_parser("init-db", help="Create the schema and seed default chains")

    return parser.parse_args(argv)


async def dispatch(args: argparse.Namespace, config: IndexerConfig, state: AppConfig) -> int:
    if args.command == "run":
        return await run_pipelines(config, state, only=args.pipeline, once=args.once)
    if args.command == "check-primary":
        return await check_primary(config, state, args.url)
    if args.command == "reset-cursor":
        return await reset_cursor(state, args.stream, args.position)
    return await init_db(state)


async def main(argv: list[str] | None = None) -> int:
    """Main entry point: parse args, connect, and dispatch the command."""
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = load_config(args.config)
    except pydantic.ValidationError as e:
        logger.error("config_invalid", error=str(e))
        return 1

    try:
        state = await open_state(config, with_cursors=args.command != "init-db")
    except (ChainIndexerError, asyncpg.PostgresError, OSError) as e:
        logger.error("connection_failed", error=str(e))
        return 1

    try:
        return await dispatch(args, config, state)
    except (ChainIndexerError, asyncpg.PostgresError, pydantic.ValidationError) as e:
        logger.error(f"{args.command.replace('-', '_')}_failed", error=str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("interrupted")
        return 130
    finally:
        await close_state(state)


def cli() -> None:
    """Synchronous entry point for console_scripts."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    cli()
