"""
Prometheus metrics collection and HTTP exposition.

Module-level metric objects are process-wide singletons shared by every
pipeline. The [Scheduler][chainindexer.core.scheduler.Scheduler] records
cycle counts, durations and failure streaks automatically; pipelines add
their own through ``set_gauge()`` / ``inc_counter()`` on
[BasePipeline][chainindexer.core.base_pipeline.BasePipeline].

Architecture:
    PIPELINE_INFO:              Registered pipelines, set once at startup.
    PIPELINE_GAUGE:             Point-in-time values (cursor, streaks).
    PIPELINE_COUNTER:           Cumulative totals (cycles, upserts, fetches).
    CYCLE_DURATION_SECONDS:     Histogram for cycle latency percentiles.
"""

from __future__ import annotations

from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class MetricsConfig(BaseModel):
    """Configuration for the Prometheus metrics endpoint.

    Set ``host`` to ``"0.0.0.0"`` in containers to allow external scraping.
    Metric recording and the endpoint are both skipped unless ``enabled``.
    """

    enabled: bool = Field(default=False, description="Enable metrics collection")
    port: int = Field(default=9108, ge=1024, le=65535, description="Metrics HTTP port")
    host: str = Field(default="127.0.0.1", description="Metrics HTTP bind address")
    path: str = Field(default="/metrics", description="Metrics endpoint path")


# ---------------------------------------------------------------------------
# Pipeline Metrics
# ---------------------------------------------------------------------------

PIPELINE_INFO = Info(
    "chainindexer_pipelines",
    "Registered pipelines and their default intervals",
)

CYCLE_DURATION_SECONDS = Histogram(
    "chainindexer_cycle_duration_seconds",
    "Duration of one pipeline cycle in seconds",
    ["pipeline"],
    buckets=(0.5, 1, 5, 30, 60, 300, 900, 1800, 3600, 7200),
)

# Automatic names (Scheduler):
#   gauge:   consecutive_failures, last_cycle_timestamp
#   counter: cycles_success, cycles_failed, errors_{type}
# Pipeline names (examples):
#   gauge:   {pipeline="metadata", name="token_metadata_cursor"}
#   counter: {pipeline="metadata", name="fetch_failed"}

PIPELINE_GAUGE = Gauge(
    "chainindexer_pipeline_gauge",
    "Pipeline gauge values (point-in-time state)",
    ["pipeline", "name"],
)

PIPELINE_COUNTER = Counter(
    "chainindexer_pipeline_counter",
    "Pipeline counter values (cumulative totals)",
    ["pipeline", "name"],
)


# ---------------------------------------------------------------------------
# HTTP Server
# ---------------------------------------------------------------------------


class MetricsServer:
    """Async HTTP server exposing a Prometheus-compatible endpoint.

    Example:
        server = MetricsServer(MetricsConfig(enabled=True, port=9108))
        await server.start()
        # ... scheduler runs ...
        await server.stop()
    """

    def __init__(self, config: MetricsConfig) -> None:
        self._config = config
        self._runner: web.AppRunner | None = None

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        """Bind the endpoint; a no-op when metrics are disabled.

        Raises:
            OSError: If the port is already in use or binding fails.
        """
        if not self._config.enabled or self._runner is not None:
            return

        app = web.Application()
        app.router.add_get(self._config.path, self._handle_metrics)

        runner = web.AppRunner(app, access_log=None)
        await runner.setup()
        await web.TCPSite(runner, self._config.host, self._config.port).start()
        self._runner = runner

    async def stop(self) -> None:
        """Stop the server. Safe to call when it never started."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    @staticmethod
    async def _handle_metrics(_request: web.Request) -> web.Response:
        return web.Response(body=generate_latest(), headers={"Content-Type": CONTENT_TYPE_LATEST})


async def start_metrics_server(config: MetricsConfig | None = None) -> MetricsServer:
    """Create and start a [MetricsServer][chainindexer.core.metrics.MetricsServer].

    The caller owns the returned server and must ``stop()`` it on shutdown.
    """
    server = MetricsServer(config or MetricsConfig())
    await server.start()
    return server
