"""
Structured logging with key=value and JSON output.

Wraps the standard library ``logging`` module. Every call takes an event
name plus keyword fields, rendered either as ``key=value`` pairs (default)
or as one JSON object per line for log shippers.

[StructuredFormatter][chainindexer.core.logger.StructuredFormatter] is
installed on the root handler by the CLI, so plain
``logging.getLogger(__name__)`` calls from the ``utils`` layer share the
same ``level name message`` layout.

Examples:
    ```python
    from chainindexer.core.logger import Logger

    logger = Logger("scheduler")
    logger.info("cycle_completed", pipeline="forex", duration_s=0.42)
    # info scheduler cycle_completed pipeline=forex duration_s=0.42

    pipeline_logger = logger.bind(pipeline="metadata")
    pipeline_logger.warning("fetch_failed", item=17)
    # warning scheduler fetch_failed pipeline=metadata item=17
    ```
"""

import datetime
import json
import logging
from typing import Any, ClassVar


def _truncate(value: Any, max_value_length: int | None) -> str:
    text = str(value)
    if max_value_length and len(text) > max_value_length:
        return text[:max_value_length] + f"...<truncated {len(text) - max_value_length} chars>"
    return text


def _quote(text: str) -> str:
    # Values with whitespace or separators must stay parseable as one token
    if text and not any(c in text for c in " =\"'\t\n"):
        return text
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def format_kv_pairs(
    fields: dict[str, Any],
    max_value_length: int | None = 1000,
    prefix: str = " ",
) -> str:
    """Render *fields* as space-separated ``key=value`` pairs.

    Args:
        fields: Key-value pairs to format, in insertion order.
        max_value_length: Maximum characters per value before truncation.
            Pass None to disable truncation.
        prefix: String prepended to non-empty output.

    Returns:
        Formatted string such as ``' attempt=2 reason="HTTP 503"'``, or an
        empty string when *fields* is empty.
    """
    if not fields:
        return ""
    rendered = (f"{key}={_quote(_truncate(value, max_value_length))}" for key, value in fields.items())
    return prefix + " ".join(rendered)


class StructuredFormatter(logging.Formatter):
    """Formats every log record as ``level name message key=value ...``.

    Fields attached by [Logger][chainindexer.core.logger.Logger] travel in
    the ``structured_kv`` record attribute. Records from plain stdlib
    loggers have none and are emitted with the same prefix.
    """

    def format(self, record: logging.LogRecord) -> str:
        line = f"{record.levelname.lower()} {record.name} {record.getMessage()}"
        fields: dict[str, Any] = getattr(record, "structured_kv", {})
        if fields:
            line += format_kv_pairs(fields, max_value_length=None)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class Logger:
    """Structured logger taking an event name and keyword fields.

    Attributes:
        name: Underlying ``logging.Logger`` name.
    """

    _DEFAULT_MAX_VALUE_LENGTH: ClassVar[int] = 1000

    def __init__(
        self,
        name: str,
        *,
        json_output: bool = False,
        max_value_length: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Initialize a structured logger.

        Args:
            name: Logger name, usually the component or pipeline name.
            json_output: Emit JSON objects instead of key=value pairs.
            max_value_length: Per-value truncation limit. Defaults to 1000.
            context: Fields prepended to every record (see
                [bind()][chainindexer.core.logger.Logger.bind]).
        """
        self._logger = logging.getLogger(name)
        self._json_output = json_output
        self._max_value_length = (
            self._DEFAULT_MAX_VALUE_LENGTH if max_value_length is None else max_value_length
        )
        self._context: dict[str, Any] = dict(context or {})

    @property
    def name(self) -> str:
        return self._logger.name

    def bind(self, **context: Any) -> "Logger":
        """Return a logger with the same name that always adds *context* fields."""
        return Logger(
            self._logger.name,
            json_output=self._json_output,
            max_value_length=self._max_value_length,
            context={**self._context, **context},
        )

    def _emit(self, level: int, msg: str, fields: dict[str, Any], *, exc_info: bool = False) -> None:
        if not self._logger.isEnabledFor(level):
            return
        merged = {**self._context, **fields}
        if self._json_output:
            payload = {
                "timestamp": datetime.datetime.now(datetime.UTC).isoformat(),
                "level": logging.getLevelName(level).lower(),
                "service": self._logger.name,
                "message": msg,
                **merged,
            }
            self._logger.log(level, json.dumps(payload, default=str), exc_info=exc_info)
            return
        truncated = {key: _truncate(value, self._max_value_length) for key, value in merged.items()}
        self._logger.log(level, msg, extra={"structured_kv": truncated}, exc_info=exc_info)

    def debug(self, msg: str, **fields: Any) -> None:
        self._emit(logging.DEBUG, msg, fields)

    def info(self, msg: str, **fields: Any) -> None:
        self._emit(logging.INFO, msg, fields)

    def warning(self, msg: str, **fields: Any) -> None:
        self._emit(logging.WARNING, msg, fields)

    def error(self, msg: str, **fields: Any) -> None:
        self._emit(logging.ERROR, msg, fields)

    def critical(self, msg: str, **fields: Any) -> None:
        self._emit(logging.CRITICAL, msg, fields)

    def exception(self, msg: str, **fields: Any) -> None:
        """Log at ERROR level with the active exception's traceback."""
        self._emit(logging.ERROR, msg, fields, exc_info=True)
