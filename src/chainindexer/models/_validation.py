"""Shared validation helpers for frozen dataclass models.

Private module, not part of the public API. Used by ``__post_init__``
methods in sibling model modules so invalid instances never escape the
constructor.
"""

from __future__ import annotations

import re
from typing import Any


_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")
_TX_HASH_RE = re.compile(r"^0x[0-9a-f]{64}$")


def validate_non_negative_int(value: Any, name: str) -> None:
    """Raise if *value* is not a non-negative ``int`` (``bool`` excluded)."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an int, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"{name} must be non-negative")


def validate_positive_int(value: Any, name: str) -> None:
    """Raise if *value* is not a strictly positive ``int``."""
    validate_non_negative_int(value, name)
    if value == 0:
        raise ValueError(f"{name} must be positive")


def validate_str_no_null(value: Any, name: str) -> None:
    """Raise if *value* is not a ``str`` or contains null bytes."""
    if not isinstance(value, str):
        raise TypeError(f"{name} must be a str, got {type(value).__name__}")
    if "\x00" in value:
        raise ValueError(f"{name} contains null bytes")


def validate_str_not_empty(value: Any, name: str) -> None:
    """Raise if *value* is not a non-empty ``str`` without null bytes."""
    validate_str_no_null(value, name)
    if not value.strip():
        raise ValueError(f"{name} must not be empty")


def validate_optional_str(value: Any, name: str) -> None:
    """Raise if *value* is neither ``None`` nor a null-free ``str``."""
    if value is not None:
        validate_str_no_null(value, name)


def normalize_address(value: Any, name: str = "address") -> str:
    """Lowercase and validate a 20-byte hex contract address.

    Returns:
        The address in canonical ``0x``-prefixed lowercase form.

    Raises:
        TypeError: If *value* is not a ``str``.
        ValueError: If *value* is not ``0x`` followed by 40 hex digits.
    """
    validate_str_no_null(value, name)
    normalized = value.strip().lower()
    if not _ADDRESS_RE.match(normalized):
        raise ValueError(f"{name} is not a valid hex address: {value!r}")
    return normalized


def normalize_tx_hash(value: Any, name: str = "tx_hash") -> str:
    """Lowercase and validate a 32-byte hex transaction hash."""
    validate_str_no_null(value, name)
    normalized = value.strip().lower()
    if not _TX_HASH_RE.match(normalized):
        raise ValueError(f"{name} is not a valid transaction hash: {value!r}")
    return normalized
