"""
Runs every registered pipeline as its own never-ending asyncio task.

Each loop runs one cycle, records its duration and outcome, reads the
pipeline's interval from [AppConfig][chainindexer.core.state.AppConfig]
(so administrative changes apply from the next sleep on) and sleeps.
A failing cycle is logged and counted inside its own loop and never
reaches the scheduler or sibling pipelines. Only task cancellation
(process shutdown) ends a loop.

Automatic metrics per pipeline, when enabled:

- ``cycle_duration_seconds{pipeline}``
- ``pipeline_counter{name="cycles_success" | "cycles_failed" | "errors_<Type>"}``
- ``pipeline_gauge{name="consecutive_failures" | "last_cycle_timestamp"}``

Examples:
    ```python
    scheduler = Scheduler(state)
    scheduler.register_pipeline("forex", forex.run, interval=3600)
    scheduler.register(metadata_pipeline)
    await scheduler.start_all()   # returns only when cancelled
    ```
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .exceptions import ConfigurationError
from .logger import Logger
from .metrics import CYCLE_DURATION_SECONDS, PIPELINE_COUNTER, PIPELINE_GAUGE, PIPELINE_INFO
from .state import AppConfig


if TYPE_CHECKING:
    from .base_pipeline import BasePipeline, BasePipelineConfig


CycleFn = Callable[[], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class RegisteredPipeline:
    """A cycle function and its default interval, keyed by name in the scheduler."""

    name: str
    cycle_fn: CycleFn
    interval: float


class Scheduler:
    """Owns a fixed set of named pipelines and runs them concurrently."""

    def __init__(self, state: AppConfig, *, metrics_enabled: bool = False) -> None:
        self._state = state
        self._metrics_enabled = metrics_enabled
        self._pipelines: dict[str, RegisteredPipeline] = {}
        self._logger = Logger("scheduler")

    @property
    def pipelines(self) -> dict[str, RegisteredPipeline]:
        return dict(self._pipelines)

    def register_pipeline(self, name: str, cycle_fn: CycleFn, interval: float) -> None:
        """Add a pipeline. Must be called before [start_all()][chainindexer.core.scheduler.Scheduler.start_all].

        Raises:
            ValueError: If *name* is already registered or *interval* is not positive.
        """
        if name in self._pipelines:
            raise ValueError(f"pipeline {name!r} is already registered")
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self._pipelines[name] = RegisteredPipeline(name, cycle_fn, float(interval))
        self._logger.debug("pipeline_registered", pipeline=name, interval_s=interval)

    def register(self, pipeline: BasePipeline[BasePipelineConfig]) -> None:
        """Register a [BasePipeline][chainindexer.core.base_pipeline.BasePipeline] by its name and config interval."""
        self.register_pipeline(pipeline.name, pipeline.run, pipeline.config.interval)

    # -------------------------------------------------------------------------
    # Running
    # -------------------------------------------------------------------------

    async def start_all(self) -> None:
        """Launch every registered pipeline and wait on them forever.

        Raises:
            ConfigurationError: If no pipeline is registered.
        """
        if not self._pipelines:
            raise ConfigurationError("no pipelines registered")

        if self._metrics_enabled:
            PIPELINE_INFO.info(
                {name: str(entry.interval) for name, entry in self._pipelines.items()}
            )
        self._logger.info("scheduler_started", pipelines=",".join(self._pipelines))

        try:
            async with asyncio.TaskGroup() as tg:
                for entry in self._pipelines.values():
                    tg.create_task(self._run_pipeline(entry), name=f"pipeline:{entry.name}")
        finally:
            self._logger.info("scheduler_stopped")

    async def run_once(self, name: str) -> bool:
        """Run a single cycle of *name* through the same error boundary as the loop.

        Returns:
            True if the cycle succeeded.

        Raises:
            KeyError: If *name* is not registered.
        """
        return await self._run_cycle(self._pipelines[name], consecutive_failures=0) == 0

    async def _run_pipeline(self, entry: RegisteredPipeline) -> None:
        consecutive_failures = 0
        while True:
            consecutive_failures = await self._run_cycle(entry, consecutive_failures)
            interval = await self._state.interval(entry.name, entry.interval)
            await asyncio.sleep(interval)

    async def _run_cycle(self, entry: RegisteredPipeline, consecutive_failures: int) -> int:
        """Run one cycle and return the updated failure streak."""
        logger = self._logger.bind(pipeline=entry.name)
        start = time.monotonic()
        try:
            await entry.cycle_fn()
        except (asyncio.CancelledError, KeyboardInterrupt, SystemExit):
            raise
        except Exception as e:  # cycle error boundary
            consecutive_failures += 1
            duration = time.monotonic() - start
            self._inc_counter(entry.name, "cycles_failed")
            self._inc_counter(entry.name, f"errors_{type(e).__name__}")
            self._set_gauge(entry.name, "consecutive_failures", consecutive_failures)
            logger.error(
                "cycle_failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_s=round(duration, 3),
                consecutive_failures=consecutive_failures,
            )
            return consecutive_failures

        duration = time.monotonic() - start
        if self._metrics_enabled:
            CYCLE_DURATION_SECONDS.labels(pipeline=entry.name).observe(duration)
        self._inc_counter(entry.name, "cycles_success")
        self._set_gauge(entry.name, "consecutive_failures", 0)
        self._set_gauge(entry.name, "last_cycle_timestamp", time.time())
        logger.info("cycle_completed", duration_s=round(duration, 3))
        return 0

    # -------------------------------------------------------------------------
    # Metrics Helpers
    # -------------------------------------------------------------------------

    def _set_gauge(self, pipeline: str, name: str, value: float) -> None:
        if self._metrics_enabled:
            PIPELINE_GAUGE.labels(pipeline=pipeline, name=name).set(value)

    def _inc_counter(self, pipeline: str, name: str) -> None:
        if self._metrics_enabled:
            PIPELINE_COUNTER.labels(pipeline=pipeline, name=name).inc()
