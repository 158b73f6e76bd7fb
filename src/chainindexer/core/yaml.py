"""YAML configuration loading.

Uses ``yaml.safe_load`` so configuration files can only produce plain
scalars, lists and mappings. The result is always handed to a pydantic
model for schema validation; this module only parses.

Examples:
    ```python
    from chainindexer.core.yaml import load_yaml

    raw = load_yaml("config/indexer.yaml")
    config = IndexerConfig.model_validate(raw)
    ```

See Also:
    [IndexerConfig][chainindexer.core.state.IndexerConfig]: Root model built
        from the parsed document.
    [BasePipeline.from_yaml()][chainindexer.core.base_pipeline.BasePipeline.from_yaml]:
        Per-pipeline factory that delegates here.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError


def load_yaml(config_path: str | Path) -> dict[str, Any]:
    """Load and parse a YAML configuration file.

    Args:
        config_path: Path to the YAML file (absolute or relative).

    Returns:
        The parsed document. An empty file yields an empty dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigurationError: If the file is not valid YAML or its top level
            is not a mapping.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with path.open(encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Top level of {config_path} must be a mapping, got {type(data).__name__}"
        )
    return data
