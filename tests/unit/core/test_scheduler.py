"""
Unit tests for core.scheduler module.

Tests:
- Registration validation (duplicates, non-positive intervals)
- run_once() success and failure through the error boundary
- A failing pipeline never stops its siblings
- Intervals re-read from AppConfig between cycles
- start_all() with nothing registered
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from chainindexer.core.base_pipeline import BasePipeline, BasePipelineConfig
from chainindexer.core.exceptions import ConfigurationError, TransportError
from chainindexer.core.scheduler import Scheduler
from chainindexer.core.state import AppConfig


class _CountingPipeline(BasePipeline[BasePipelineConfig]):
    PIPELINE_NAME = "counting"

    def __init__(self, state: AppConfig, config: BasePipelineConfig | None = None) -> None:
        super().__init__(state, config)
        self.cycles = 0

    async def run(self) -> None:
        self.cycles += 1


# =============================================================================
# Registration
# =============================================================================


class TestRegistration:
    """register() / register_pipeline()."""

    def test_register_pipeline_uses_config_interval(self, state: AppConfig) -> None:
        scheduler = Scheduler(state)
        scheduler.register(_CountingPipeline(state, BasePipelineConfig(interval=42)))

        entry = scheduler.pipelines["counting"]
        assert entry.interval == 42.0

    def test_duplicate_name_rejected(self, state: AppConfig) -> None:
        scheduler = Scheduler(state)
        scheduler.register_pipeline("forex", AsyncMock(), 10)

        with pytest.raises(ValueError, match="already registered"):
            scheduler.register_pipeline("forex", AsyncMock(), 10)

    @pytest.mark.parametrize("interval", [0, -1.5])
    def test_non_positive_interval_rejected(self, state: AppConfig, interval: float) -> None:
        with pytest.raises(ValueError, match="interval must be positive"):
            Scheduler(state).register_pipeline("forex", AsyncMock(), interval)

    def test_pipelines_returns_copy(self, state: AppConfig) -> None:
        scheduler = Scheduler(state)
        scheduler.register_pipeline("forex", AsyncMock(), 10)
        scheduler.pipelines.clear()
        assert "forex" in scheduler.pipelines


# =============================================================================
# Single Cycles
# =============================================================================


class TestRunOnce:
    """run_once() shares the per-cycle error boundary."""

    async def test_success(self, state: AppConfig) -> None:
        scheduler = Scheduler(state)
        cycle = AsyncMock()
        scheduler.register_pipeline("forex", cycle, 10)

        assert await scheduler.run_once("forex") is True
        cycle.assert_awaited_once()

    async def test_failure_is_contained(self, state: AppConfig) -> None:
        scheduler = Scheduler(state)
        scheduler.register_pipeline("forex", AsyncMock(side_effect=TransportError("down")), 10)

        assert await scheduler.run_once("forex") is False

    async def test_cancellation_propagates(self, state: AppConfig) -> None:
        scheduler = Scheduler(state)
        scheduler.register_pipeline("forex", AsyncMock(side_effect=asyncio.CancelledError()), 10)

        with pytest.raises(asyncio.CancelledError):
            await scheduler.run_once("forex")

    async def test_unknown_pipeline(self, state: AppConfig) -> None:
        with pytest.raises(KeyError):
            await Scheduler(state).run_once("missing")

    async def test_metrics_enabled_cycle(self, state: AppConfig) -> None:
        scheduler = Scheduler(state, metrics_enabled=True)
        scheduler.register_pipeline("forex", AsyncMock(), 10)
        assert await scheduler.run_once("forex") is True


# =============================================================================
# Concurrent Loops
# =============================================================================


class TestStartAll:
    """start_all() runs every loop until cancelled."""

    async def test_nothing_registered(self, state: AppConfig) -> None:
        with pytest.raises(ConfigurationError, match="no pipelines"):
            await Scheduler(state).start_all()

    async def test_failing_pipeline_does_not_stop_sibling(self, state: AppConfig) -> None:
        scheduler = Scheduler(state)
        failing = AsyncMock(side_effect=RuntimeError("boom"))
        healthy = AsyncMock()
        scheduler.register_pipeline("failing", failing, 0.01)
        scheduler.register_pipeline("healthy", healthy, 0.01)

        with pytest.raises(TimeoutError):
            await asyncio.wait_for(scheduler.start_all(), timeout=0.2)

        assert failing.await_count >= 2
        assert healthy.await_count >= 2

    async def test_interval_read_from_state(self, state: AppConfig) -> None:
        """A shorter interval set at runtime takes effect after the current sleep."""
        scheduler = Scheduler(state)
        cycle = AsyncMock()
        scheduler.register_pipeline("forex", cycle, 3600)
        await state.set_interval("forex", 0.01)

        with pytest.raises(TimeoutError):
            await asyncio.wait_for(scheduler.start_all(), timeout=0.2)

        assert cycle.await_count >= 3

    async def test_default_interval_without_override(self, state: AppConfig) -> None:
        scheduler = Scheduler(state)
        cycle = AsyncMock()
        scheduler.register_pipeline("forex", cycle, 3600)

        with pytest.raises(TimeoutError):
            await asyncio.wait_for(scheduler.start_all(), timeout=0.1)

        cycle.assert_awaited_once()
