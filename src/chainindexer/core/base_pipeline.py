"""
Abstract base class for every scheduled pipeline.

A pipeline is one named unit of recurring work. It owns its typed
configuration, a structured logger and per-pipeline metric helpers; the
[Scheduler][chainindexer.core.scheduler.Scheduler] owns the loop that
calls [run()][chainindexer.core.base_pipeline.BasePipeline.run] once per
cycle.

Pipelines never keep a database pool between cycles. Every unit of work
asks [AppConfig.pool()][chainindexer.core.state.AppConfig.pool] for the
active one, so a cutover is picked up on the next access.

See Also:
    [SyncPipeline][chainindexer.services.common.pipeline.SyncPipeline]:
        Cursor-driven subclass used by the metadata and chain-log streams.
    [BasePipelineConfig][chainindexer.core.base_pipeline.BasePipelineConfig]:
        Common configuration fields.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar, Generic, TypeVar, cast

from pydantic import BaseModel, Field

from .logger import Logger
from .metrics import PIPELINE_COUNTER, PIPELINE_GAUGE, MetricsConfig
from .state import AppConfig
from .yaml import load_yaml


# =============================================================================
# Base Configuration
# =============================================================================


class BasePipelineConfig(BaseModel):
    """Configuration shared by every pipeline.

    ``interval`` is only the starting value: the scheduler re-reads the
    interval from [AppConfig][chainindexer.core.state.AppConfig] after each
    cycle so administrators can change it while the process runs.
    """

    interval: float = Field(
        default=86_400.0,
        gt=0.0,
        description="Seconds to sleep between cycles",
    )
    enabled: bool = Field(default=True, description="Register this pipeline at startup")
    metrics: MetricsConfig = Field(
        default_factory=MetricsConfig,
        description="Prometheus metrics configuration",
    )


ConfigT = TypeVar("ConfigT", bound=BasePipelineConfig)


class BasePipeline(ABC, Generic[ConfigT]):
    """Abstract base class for all pipelines.

    Subclasses must:

    - set ``PIPELINE_NAME`` (scheduler key, log name, metric label)
    - set ``CONFIG_CLASS`` for configuration parsing
    - implement [run()][chainindexer.core.base_pipeline.BasePipeline.run]

    Attributes:
        _state: Shared [AppConfig][chainindexer.core.state.AppConfig].
        _config: Typed configuration (``CONFIG_CLASS`` defaults when omitted).
        _logger: Structured logger bound to the pipeline name.
    """

    PIPELINE_NAME: ClassVar[str] = "base_pipeline"
    CONFIG_CLASS: ClassVar[type[BaseModel]] = BasePipelineConfig

    def __init__(self, state: AppConfig, config: ConfigT | None = None) -> None:
        self._state = state
        self._config: ConfigT = (
            config if config is not None else cast("ConfigT", self.CONFIG_CLASS())
        )
        self._logger = Logger(self.name)

    @property
    def name(self) -> str:
        """Scheduler key; subclasses registered per chain override this."""
        return self.PIPELINE_NAME

    @property
    def config(self) -> ConfigT:
        return self._config

    @abstractmethod
    async def run(self) -> None:
        """Execute one cycle.

        Raising is fine: the scheduler logs the error, counts it, and runs
        the next cycle after the interval.
        """
        ...

    # -------------------------------------------------------------------------
    # Factory Methods
    # -------------------------------------------------------------------------

    @classmethod
    def from_yaml(cls, config_path: str, state: AppConfig, **kwargs: Any) -> BasePipeline[ConfigT]:
        """Create a pipeline from a YAML file holding its ``CONFIG_CLASS`` fields."""
        return cls.from_dict(load_yaml(config_path), state=state, **kwargs)

    @classmethod
    def from_dict(cls, data: dict[str, Any], state: AppConfig, **kwargs: Any) -> BasePipeline[ConfigT]:
        """Create a pipeline from a configuration dictionary."""
        config = cast("ConfigT", cls.CONFIG_CLASS(**data))
        return cls(state=state, config=config, **kwargs)

    # -------------------------------------------------------------------------
    # Custom Metrics
    # -------------------------------------------------------------------------

    def set_gauge(self, name: str, value: float) -> None:
        """Set ``pipeline_gauge{pipeline=<name>, name=name}``.

        No-op if metrics are disabled.
        """
        if not self._config.metrics.enabled:
            return
        PIPELINE_GAUGE.labels(pipeline=self.name, name=name).set(value)

    def inc_counter(self, name: str, value: float = 1) -> None:
        """Increment ``pipeline_counter{pipeline=<name>, name=name}``.

        No-op if metrics are disabled.
        """
        if not self._config.metrics.enabled:
            return
        PIPELINE_COUNTER.labels(pipeline=self.name, name=name).inc(value)
