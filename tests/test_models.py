"""Tests for the pydantic models in miner_watch.models."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from conftest import addr, tx
from miner_watch.models import (
    MinerScanRequest,
    RecheckRequest,
    SellTransaction,
    TraceResult,
    TransferRecord,
)


def _raw_transfer(**overrides) -> dict:
    raw = {
        "blockNum": "0x1f4",
        "hash": tx(1).upper().replace("0X", "0x"),
        "from": addr(0xAB).upper().replace("0X", "0x"),
        "to": addr(0xCD),
        "value": 12.5,
        "asset": "VDNT",
        "category": "erc20",
        "rawContract": {"address": "0x" + "70" * 20},
        "metadata": {"blockTimestamp": "2025-02-01T08:00:00.000Z"},
    }
    raw.update(overrides)
    return raw


class TestTransferRecord:

    def test_from_alchemy(self):
        t = TransferRecord.from_alchemy(_raw_transfer())

        assert t.from_address == addr(0xAB)
        assert t.to_address == addr(0xCD)
        assert t.value == Decimal("12.5")
        assert t.block_number == 500
        assert t.tx_hash == tx(1)
        assert t.contract_address == "0x" + "70" * 20
        assert t.timestamp == datetime(2025, 2, 1, 8, tzinfo=timezone.utc)

    def test_missing_fields_tolerated(self):
        t = TransferRecord.from_alchemy({"from": None, "value": None})

        assert t.from_address == ""
        assert t.value is None
        assert t.block_number == 0
        assert t.timestamp is None

    def test_unparseable_value(self):
        assert TransferRecord.from_alchemy(_raw_transfer(value="lots")).value is None


class TestTraceResult:

    def test_camel_case_dump(self):
        result = TraceResult(
            is_linked_to_miner=True, trace_depth=1,
            miner_address=addr(2), trace_path=[addr(1), addr(2)],
        )
        assert result.model_dump(by_alias=True) == {
            "isLinkedToMiner": True,
            "traceDepth": 1,
            "minerAddress": addr(2),
            "tracePath": [addr(1), addr(2)],
        }

    def test_validates_from_camel_case(self):
        result = TraceResult.model_validate({"isLinkedToMiner": True, "traceDepth": 2})
        assert result.is_linked_to_miner and result.trace_depth == 2

    def test_constructors(self):
        assert TraceResult.negative(4) == TraceResult(trace_depth=4)
        direct = TraceResult.direct(addr(9), 2)
        assert direct.trace_path == [addr(9)]
        assert direct.miner_address == addr(9)


class TestSellTransaction:

    def _sell(self) -> SellTransaction:
        return SellTransaction(chain="abstract", tx_hash=tx(1), seller_address=addr(1))

    def test_apply_linked_trace(self):
        row = self._sell()
        row.apply_trace(TraceResult(
            is_linked_to_miner=True, trace_depth=0,
            miner_address=addr(5), trace_path=[addr(1), addr(5)],
        ))
        assert row.is_indirect_miner and not row.is_direct_miner
        assert row.miner_address == addr(5)
        assert row.trace_path == [addr(1), addr(5)]

    def test_apply_negative_trace_clears_link(self):
        row = self._sell()
        row.miner_address = addr(5)
        row.trace_path = [addr(1), addr(5)]
        row.apply_trace(TraceResult.negative(3))
        assert row.is_indirect_miner is False
        assert row.miner_address is None
        assert row.trace_path is None
        assert row.trace_depth == 3

    def test_mark_direct(self):
        row = self._sell()
        row.mark_direct()
        assert row.is_direct_miner and not row.is_indirect_miner
        assert row.miner_address == addr(1)
        assert row.trace_depth == 0
        assert row.trace_path == [addr(1)]


class TestRequests:

    def test_recheck_request_accepts_camel_case(self):
        req = RecheckRequest.model_validate({"txHash": tx(1), "chain": "base"})
        assert req.tx_hash == tx(1)

    def test_recheck_request_defaults_blank(self):
        req = RecheckRequest()
        assert req.tx_hash == "" and req.chain == ""

    def test_scan_request_default(self):
        assert MinerScanRequest(chain="base").max_miners == 100
