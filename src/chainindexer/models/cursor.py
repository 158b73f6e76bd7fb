"""Sync cursor types for database persistence.

Pure data containers representing rows in the ``sync_cursor`` table.
A cursor is the last fully processed position of one numbered stream
(a registry row id or a block number). Position ``0`` means the stream
was drained and the next cycle rescans from the start.

All validation happens in ``__post_init__`` so invalid instances never
escape the constructor. The database parameter tuple is computed once
and cached.

See Also:
    [SyncPipeline][chainindexer.services.common.pipeline.SyncPipeline]:
        The only writer of a stream's cursor.
    [upsert_cursor()][chainindexer.services.common.queries.upsert_cursor]:
        Persists a cursor row.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import NamedTuple

from ._validation import validate_non_negative_int, validate_str_not_empty


class SyncCursorDbParams(NamedTuple):
    """Column-ordered parameters for the ``sync_cursor`` upsert."""

    stream_id: str
    position: int
    updated_at: int


@dataclass(frozen=True, slots=True)
class SyncCursor:
    """A single row in the ``sync_cursor`` table.

    Attributes:
        stream_id: Owning stream (a
            [StreamName][chainindexer.models.constants.StreamName] value or a
            chain-log stream id).
        position: Last processed id; ``0`` means drained.
        updated_at: Unix timestamp of the last write.

    Examples:
        ```python
        cursor = SyncCursor("token_metadata", 41)
        cursor.advance_to(0).position  # 0
        ```
    """

    stream_id: str
    position: int
    updated_at: int = field(default_factory=lambda: int(time.time()))
    _db_params: SyncCursorDbParams = field(
        default=None,
        init=False,
        repr=False,
        compare=False,
        hash=False,  # type: ignore[assignment]
    )

    def __post_init__(self) -> None:
        validate_str_not_empty(self.stream_id, "stream_id")
        validate_non_negative_int(self.position, "position")
        validate_non_negative_int(self.updated_at, "updated_at")
        object.__setattr__(self, "stream_id", str(self.stream_id))
        object.__setattr__(
            self,
            "_db_params",
            SyncCursorDbParams(self.stream_id, self.position, self.updated_at),
        )

    @property
    def is_drained(self) -> bool:
        """Whether the next cycle starts from the beginning of the stream."""
        return self.position == 0

    def advance_to(self, position: int) -> SyncCursor:
        """Return a new cursor for the same stream at *position*, stamped now."""
        return SyncCursor(self.stream_id, position)

    def to_db_params(self) -> SyncCursorDbParams:
        """Return cached database parameters in upsert column order."""
        return self._db_params
