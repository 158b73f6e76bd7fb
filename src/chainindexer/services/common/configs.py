"""Shared configuration models for chainindexer pipelines.

Every pipeline that calls an upstream embeds a
[FetchConfig][chainindexer.services.common.configs.FetchConfig]; every
cursor-driven pipeline extends
[SyncConfig][chainindexer.services.common.configs.SyncConfig]. Partial YAML
overrides inherit the remaining defaults.

See Also:
    [fetch_with_retry()][chainindexer.utils.http.fetch_with_retry]:
        Consumes the ``FetchConfig`` fields as keyword arguments.
    [SyncPipeline][chainindexer.services.common.pipeline.SyncPipeline]:
        Reads ``max_consecutive_failures`` and ``rescan_on_drain``.

Examples:
    ```yaml
    pipelines:
      metadata:
        interval: 86400
        fetch:
          max_attempts: 5
          max_consecutive_failures: 3
    ```
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from chainindexer.core.base_pipeline import BasePipelineConfig


class FetchConfig(BaseModel):
    """Retry budget of one logical upstream call."""

    max_attempts: int = Field(default=5, ge=1, le=20, description="Attempts per logical fetch")
    max_consecutive_failures: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Give up early after this many failures in a row",
    )
    base_delay: float = Field(default=0.3, ge=0.0, le=60.0, description="Linear backoff unit")
    timeout: float = Field(default=10.0, gt=0.0, le=300.0, description="Per-attempt timeout")
    max_response_size: int = Field(
        default=16 * 1024 * 1024,
        ge=1024,
        description="Largest accepted response body in bytes",
    )

    def as_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for [fetch_with_retry()][chainindexer.utils.http.fetch_with_retry]."""
        return {
            "max_attempts": self.max_attempts,
            "max_consecutive_failures": self.max_consecutive_failures,
            "base_delay": self.base_delay,
            "timeout": self.timeout,
            "max_size": self.max_response_size,
        }


class FetchingPipelineConfig(BasePipelineConfig):
    """Base configuration of pipelines that call an upstream."""

    fetch: FetchConfig = Field(default_factory=FetchConfig)


class SyncConfig(FetchingPipelineConfig):
    """Base configuration of cursor-driven pipelines.

    Note:
        The cycle aborts when the streak of failed fetches *exceeds*
        ``max_consecutive_failures``, so the default of 2 aborts on the
        third failure in a row.
    """

    max_consecutive_failures: int = Field(
        default=2,
        ge=0,
        description="Failed items tolerated in a row before the cycle aborts",
    )
    rescan_on_drain: bool = Field(
        default=True,
        description="Reset the cursor to 0 after a complete cycle",
    )
