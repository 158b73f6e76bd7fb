"""Unit tests for the chainindexer exception hierarchy.

Tests verify:
- issubclass relationships match the documented tree
- except clauses catch the expected subclasses
- SyncAbortedError carries the rollback details
"""

import asyncio

import pytest

from chainindexer.core.exceptions import (
    ChainIndexerError,
    ConfigurationError,
    ConnectionPoolError,
    CutoverValidationError,
    DatabaseError,
    PersistenceError,
    SyncAbortedError,
    TransportError,
    ValidationError,
)


ALL_CONCRETE = (
    ConfigurationError,
    ConnectionPoolError,
    PersistenceError,
    TransportError,
    ValidationError,
    CutoverValidationError,
)


# =============================================================================
# Hierarchy Tests
# =============================================================================


class TestExceptionHierarchy:
    """Verify issubclass relationships match the documented tree."""

    @pytest.mark.parametrize("exc_cls", [*ALL_CONCRETE, SyncAbortedError])
    def test_all_inherit_from_base(self, exc_cls: type) -> None:
        assert issubclass(exc_cls, ChainIndexerError)

    @pytest.mark.parametrize("exc_cls", [ConnectionPoolError, PersistenceError])
    def test_database_errors(self, exc_cls: type) -> None:
        assert issubclass(exc_cls, DatabaseError)

    def test_validation_is_not_transport(self) -> None:
        """Missing fields must never count toward the transport circuit breaker."""
        assert not issubclass(ValidationError, TransportError)
        assert not issubclass(TransportError, ValidationError)

    def test_cancellation_is_not_caught(self) -> None:
        assert not issubclass(asyncio.CancelledError, ChainIndexerError)


class TestCatching:
    """except clauses catch the expected subclasses."""

    @pytest.mark.parametrize("exc_cls", ALL_CONCRETE)
    def test_caught_by_base(self, exc_cls: type[ChainIndexerError]) -> None:
        with pytest.raises(ChainIndexerError, match="boom"):
            raise exc_cls("boom")

    def test_pool_error_caught_as_database_error(self) -> None:
        with pytest.raises(DatabaseError):
            raise ConnectionPoolError("pool exhausted")


class TestSyncAbortedError:
    """SyncAbortedError attributes and message."""

    def test_attributes(self) -> None:
        err = SyncAbortedError("token_metadata", first_failure_id=3, cursor=2, reason="HTTP 503")

        assert err.stream_id == "token_metadata"
        assert err.first_failure_id == 3
        assert err.cursor == 2

    def test_message(self) -> None:
        err = SyncAbortedError("chainlogs:8453", 19_000_001, 19_000_000, "HTTP 502")
        assert str(err) == (
            "chainlogs:8453: aborted at item 19000001, cursor rolled back to 19000000: HTTP 502"
        )
