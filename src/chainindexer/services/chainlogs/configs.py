"""Chain-log pipeline configuration models."""

from __future__ import annotations

from pydantic import Field, field_validator

from chainindexer.models._validation import normalize_address
from chainindexer.services.common.configs import SyncConfig


class ChainLogConfig(SyncConfig):
    """One chain's ERC-20 event sync.

    Examples:
        ```yaml
        chainlogs:
          - chainid: 8453
            explorer_api_url: https://base.blockscout.com/api
            contracts:
              - "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
            start_block: 20000000
            interval: 300
        ```
    """

    interval: float = Field(default=300.0, gt=0.0, description="Seconds to sleep between cycles")
    chainid: int = Field(gt=0)
    explorer_api_url: str = Field(
        min_length=1,
        description="Etherscan-compatible API root, e.g. https://eth.blockscout.com/api",
    )
    contracts: list[str] = Field(min_length=1, description="Contracts whose events are indexed")
    start_block: int = Field(default=0, ge=0, description="First block considered")
    page_size: int = Field(default=1000, ge=1, le=10_000, description="Logs per listing page")
    max_pages: int = Field(default=100, ge=1, description="Listing pages per contract and cycle")

    @field_validator("contracts")
    @classmethod
    def normalize_contracts(cls, v: list[str]) -> list[str]:
        return [normalize_address(address, "contracts") for address in v]

    @field_validator("explorer_api_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")
