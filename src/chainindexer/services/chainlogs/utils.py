"""Chain-log pipeline utility functions.

Parsing of explorer ``getLogs`` / ``getblockreward`` payloads and the
pluggable event decoding step.

Attributes:
    TRANSFER_TOPIC: ``keccak256("Transfer(address,address,uint256)")``.
    APPROVAL_TOPIC: ``keccak256("Approval(address,address,uint256)")``.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Protocol

from chainindexer.core.exceptions import ValidationError
from chainindexer.models.records import BlockLogs, LogEvent, RawLog


logger = logging.getLogger(__name__)

TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
APPROVAL_TOPIC = "0x8c5be1e5ebec7d5bd14f71427d1e84f3dd0314c0f7b2291e5b200ac8c7c3b925"


def parse_quantity(value: Any) -> int:
    """Parse an explorer quantity given as ``0x`` hex or decimal text.

    Raises:
        ValueError: If *value* is not a non-negative integer in either form.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        result = value
    elif isinstance(value, str) and value.strip():
        text = value.strip().lower()
        result = int(text, 16) if text.startswith("0x") else int(text)
    else:
        raise ValueError(f"not a quantity: {value!r}")
    if result < 0:
        raise ValueError(f"negative quantity: {value!r}")
    return result


# =============================================================================
# Decoding
# =============================================================================


class LogDecoder(Protocol):
    """Turns raw logs into typed events."""

    def supports(self, log: RawLog) -> bool:
        """Whether *log* is an event this decoder stores."""
        ...

    def decode(self, log: RawLog, chainid: int, block_timestamp: int) -> LogEvent:
        """Decode a supported log.

        Raises:
            ValidationError: If the log is malformed.
        """
        ...


def _topic_address(topic: str) -> str:
    # An indexed address is left-padded to 32 bytes
    return "0x" + topic[-40:]


class Erc20EventDecoder:
    """Decoder for ERC-20 ``Transfer`` and ``Approval`` events.

    ERC-721 transfers share the ``Transfer`` signature but index the token
    id as a fourth topic; they are not supported.
    """

    EVENTS: dict[str, str] = {TRANSFER_TOPIC: "Transfer", APPROVAL_TOPIC: "Approval"}

    def supports(self, log: RawLog) -> bool:
        return len(log.topics) == 3 and log.topics[0] in self.EVENTS

    def decode(self, log: RawLog, chainid: int, block_timestamp: int) -> LogEvent:
        if not self.supports(log):
            raise ValidationError(f"unsupported log {log.key}")
        data = log.data.strip().lower()
        try:
            value = int(data, 16) if data not in ("", "0x") else 0
            return LogEvent(
                chainid=chainid,
                block_number=log.block_number,
                block_timestamp=block_timestamp,
                tx_hash=log.tx_hash,
                log_index=log.log_index,
                contract_address=log.address,
                event_name=self.EVENTS[log.topics[0]],
                from_address=_topic_address(log.topics[1]),
                to_address=_topic_address(log.topics[2]),
                value=value,
            )
        except ValueError as e:
            raise ValidationError(f"log {log.key}: {e}") from e


# =============================================================================
# Explorer payloads
# =============================================================================


def parse_log_page(payload: Any) -> list[RawLog]:
    """Raw logs of one ``getLogs`` page; malformed entries are skipped.

    ``{"status": "0", "result": []}`` (no records) yields an empty list.

    Raises:
        ValidationError: If the payload has no ``result`` list.
    """
    result = payload.get("result") if isinstance(payload, dict) else None
    if not isinstance(result, list):
        raise ValidationError(f"getLogs: unexpected payload {str(payload)[:200]}")
    logs: list[RawLog] = []
    for entry in result:
        try:
            logs.append(
                RawLog(
                    address=entry["address"],
                    topics=tuple(t for t in entry["topics"] if t),
                    data=entry.get("data") or "0x",
                    block_number=parse_quantity(entry["blockNumber"]),
                    tx_hash=entry["transactionHash"],
                    log_index=parse_quantity(entry["logIndex"]),
                )
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.debug("Skipping malformed log entry: %s", e)
    return logs


def group_by_block(logs: list[RawLog]) -> list[BlockLogs]:
    """Group logs into one work item per block, ascending, duplicates dropped."""
    by_block: dict[int, dict[tuple[str, int], RawLog]] = defaultdict(dict)
    for log in logs:
        by_block[log.block_number].setdefault(log.key, log)
    return [BlockLogs(id=block, logs=tuple(entries.values())) for block, entries in sorted(by_block.items())]


def block_reward_error(payload: Any) -> str | None:
    """Why a ``getblockreward`` response carries no block, or ``None`` if it does.

    Etherscan-compatible APIs report rate limits and backend errors with
    HTTP 200 and ``{"status": "0", "message": "NOTOK", "result": "<text>"}``.
    """
    if not isinstance(payload, dict):
        return f"unexpected payload {str(payload)[:200]}"
    result = payload.get("result")
    if payload.get("status") != "1" or not isinstance(result, dict):
        message = payload.get("message") or "no message"
        return f"{message}: {str(result)[:200]}"
    return None


def parse_block_timestamp(payload: Any) -> int:
    """Unix timestamp from a ``getblockreward`` response.

    Raises:
        ValidationError: If ``result.timeStamp`` is missing or malformed.
    """
    result = payload.get("result") if isinstance(payload, dict) else None
    raw = result.get("timeStamp") if isinstance(result, dict) else None
    try:
        return parse_quantity(raw)
    except ValueError as e:
        raise ValidationError(f"getblockreward: {e}") from e
