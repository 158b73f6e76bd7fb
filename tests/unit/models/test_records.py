"""
Unit tests for models.records module.

Tests:
- MapEntry validation, address normalization and natural key
- TokenMetadata required fields and db parameter order
- RawLog / BlockLogs ordering and block consistency
- LogEvent validation and large values stored as text
"""

import pytest

from chainindexer.models import (
    BlockLogs,
    ContractVerification,
    LogEvent,
    MapEntry,
    MapKind,
    RawLog,
    TokenMetadata,
)


ADDRESS = "0x" + "Ab" * 20
TX_HASH = "0x" + "cd" * 32


def _raw_log(block: int = 100, index: int = 0, tx_hash: str = TX_HASH) -> RawLog:
    return RawLog(
        address=ADDRESS,
        topics=("0xDDF252AD",),
        data="0x",
        block_number=block,
        tx_hash=tx_hash,
        log_index=index,
    )


class TestMapEntry:
    """MapEntry dataclass."""

    def test_normalizes_address_and_kind(self):
        entry = MapEntry(7, "token", "usd-coin", "usdc", "USD Coin", 1, ADDRESS)

        assert entry.kind is MapKind.TOKEN
        assert entry.address == ADDRESS.lower()
        assert entry.key == (ADDRESS.lower(), 1)

    def test_empty_symbol_allowed(self):
        entry = MapEntry(1, MapKind.NFT, "punks", "", "", 1, ADDRESS)
        assert entry.symbol == ""

    @pytest.mark.parametrize(
        ("field", "value", "error"),
        [
            ("id", 0, ValueError),
            ("external_id", " ", ValueError),
            ("chainid", -1, ValueError),
            ("address", "0x1234", ValueError),
            ("id", "3", TypeError),
        ],
    )
    def test_invalid(self, field, value, error):
        kwargs = {
            "id": 1,
            "kind": MapKind.TOKEN,
            "external_id": "weth",
            "symbol": "weth",
            "name": "Wrapped Ether",
            "chainid": 1,
            "address": ADDRESS,
        }
        kwargs[field] = value
        with pytest.raises(error):
            MapEntry(**kwargs)

    def test_frozen(self):
        entry = MapEntry(1, MapKind.TOKEN, "weth", "weth", "Wrapped Ether", 1, ADDRESS)
        with pytest.raises(AttributeError):
            entry.id = 2  # type: ignore[misc]


class TestTokenMetadata:
    """TokenMetadata dataclass."""

    def test_db_params_order(self):
        meta = TokenMetadata(
            chainid=8453,
            address=ADDRESS,
            symbol="USDC",
            name="USD Coin",
            tokenid="usd-coin",
            decimals=6,
        )
        params = meta.to_db_params()

        assert params.tokenid == "usd-coin"
        assert params.nftid is None
        assert params[-2:] == (8453, ADDRESS.lower())

    @pytest.mark.parametrize("field", ["symbol", "name"])
    def test_required_strings(self, field):
        kwargs = {"chainid": 1, "address": ADDRESS, "symbol": "X", "name": "X", field: ""}
        with pytest.raises(ValueError, match=field):
            TokenMetadata(**kwargs)

    def test_negative_decimals(self):
        with pytest.raises(ValueError):
            TokenMetadata(chainid=1, address=ADDRESS, symbol="X", name="X", decimals=-1)


class TestContractVerification:
    """ContractVerification dataclass."""

    def test_key(self):
        verification = ContractVerification(1, ADDRESS, is_verified=True, risk_level="low")
        assert verification.key == (ADDRESS.lower(), 1)


class TestBlockLogs:
    """BlockLogs work item."""

    def test_sorted_by_log_index(self):
        block = BlockLogs(100, (_raw_log(index=5), _raw_log(index=2)))
        assert [log.log_index for log in block.logs] == [2, 5]

    def test_keys(self):
        block = BlockLogs(100, (_raw_log(index=0), _raw_log(index=1)))
        assert block.keys == frozenset({(TX_HASH, 0), (TX_HASH, 1)})

    def test_rejects_foreign_log(self):
        with pytest.raises(ValueError, match="belongs to block 101"):
            BlockLogs(100, (_raw_log(block=101),))

    def test_topics_lowercased(self):
        assert _raw_log().topics == ("0xddf252ad",)

    def test_bad_tx_hash(self):
        with pytest.raises(ValueError, match="transaction hash"):
            _raw_log(tx_hash="0xabc")


class TestLogEvent:
    """LogEvent dataclass."""

    def _event(self, **overrides):
        fields = {
            "chainid": 8453,
            "block_number": 100,
            "block_timestamp": 1_700_000_000,
            "tx_hash": TX_HASH,
            "log_index": 3,
            "contract_address": ADDRESS,
            "event_name": "Transfer",
            "from_address": "0x" + "11" * 20,
            "to_address": "0x" + "22" * 20,
            "value": 10,
        }
        fields.update(overrides)
        return LogEvent(**fields)

    def test_value_above_64_bits_stored_as_text(self):
        value = 2**200
        assert self._event(value=value).to_db_params().value == str(value)

    def test_key(self):
        assert self._event().key == (TX_HASH, 3)

    def test_negative_value_rejected(self):
        with pytest.raises(ValueError):
            self._event(value=-1)

    def test_bool_rejected_as_int(self):
        with pytest.raises(TypeError):
            self._event(log_index=True)
