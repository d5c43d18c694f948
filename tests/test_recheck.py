"""Tests for recheck_transaction (recheck.py)."""

from __future__ import annotations

import pytest

from config import TRACE_MAX_DEPTH
from conftest import addr, tx
from miner_watch.cache import SQLiteCache
from miner_watch.models import SellTransaction, TraceResult
from miner_watch.recheck import recheck_transaction
from miner_watch.sell_scanner import trace_cache_key

SELLER = addr(0x5E11)
MINER = addr(0xBEEF)


class RecordingTracer:
    def __init__(self, result: TraceResult):
        self.result = result
        self.calls: list[dict] = []

    async def trace(self, address, *, max_depth=10, visited=None, logs=None, **kwargs):
        self.calls.append({"address": address, "max_depth": max_depth, "visited": visited})
        if logs is not None:
            logs.append(f"Tracing funding for {address}")
        return self.result


@pytest.fixture
async def seeded_store(store):
    await store.upsert_sell_transactions([
        SellTransaction(
            chain="abstract",
            tx_hash=tx(1),
            seller_address=SELLER,
            token_amount=1234.5,
            block_number=777,
            is_indirect_miner=True,
            miner_address=addr(0xDEAD),
            trace_depth=2,
            trace_path=[SELLER, addr(0xDEAD)],
        )
    ])
    return store


@pytest.fixture
async def cache(tmp_path):
    c = SQLiteCache(db_path=str(tmp_path / "cache.db"), default_ttl=60)
    yield c
    await c.close()


class TestRecheck:

    @pytest.mark.asyncio
    async def test_unknown_hash_returns_none(self, store, cache):
        tracer = RecordingTracer(TraceResult.negative(0))
        result = await recheck_transaction("abstract", tx(99), store=store, tracer=tracer, result_cache=cache)
        assert result is None
        assert tracer.calls == []

    @pytest.mark.asyncio
    async def test_direct_miner_skips_trace(self, seeded_store, cache):
        await seeded_store.store_miner_addresses("abstract", {SELLER: (1, 1)})
        tracer = RecordingTracer(TraceResult.negative(0))

        status = await recheck_transaction("abstract", tx(1), store=seeded_store, tracer=tracer, result_cache=cache)

        assert status.is_miner is True
        assert status.is_indirect_miner is False
        assert status.miner_connection == SELLER
        assert status.trace_path == [SELLER]
        assert tracer.calls == []
        row = await seeded_store.get_sell_transaction("abstract", tx(1))
        assert row.is_direct_miner and not row.is_indirect_miner
        assert row.trace_depth == 0

    @pytest.mark.asyncio
    async def test_indirect_link_overwrites_row_and_cache(self, seeded_store, cache):
        linked = TraceResult(is_linked_to_miner=True, trace_depth=0, miner_address=MINER, trace_path=[SELLER, MINER])
        tracer = RecordingTracer(linked)

        status = await recheck_transaction("abstract", tx(1), store=seeded_store, tracer=tracer, result_cache=cache)

        assert status.is_indirect_miner is True
        assert status.miner_connection == MINER
        assert status.trace_path == [SELLER, MINER]
        assert tracer.calls[0]["visited"] == set()
        assert tracer.calls[0]["max_depth"] == TRACE_MAX_DEPTH
        row = await seeded_store.get_sell_transaction("abstract", tx(1))
        assert row.miner_address == MINER
        assert row.trace_path == [SELLER, MINER]
        cached = await cache.get(trace_cache_key("abstract", SELLER))
        assert cached["minerAddress"] == MINER

    @pytest.mark.asyncio
    async def test_negative_clears_stale_outcome(self, seeded_store, cache):
        await cache.set(trace_cache_key("abstract", SELLER), {"isLinkedToMiner": True})
        tracer = RecordingTracer(TraceResult.negative(0))

        status = await recheck_transaction("abstract", tx(1), store=seeded_store, tracer=tracer, result_cache=cache)

        assert status.is_miner is False and status.is_indirect_miner is False
        assert status.miner_connection is None
        row = await seeded_store.get_sell_transaction("abstract", tx(1))
        assert row.is_indirect_miner is False
        assert row.miner_address is None
        assert row.trace_path is None
        assert await cache.get(trace_cache_key("abstract", SELLER)) is None

    @pytest.mark.asyncio
    async def test_logs_start_with_transaction_summary(self, seeded_store, cache):
        tracer = RecordingTracer(TraceResult.negative(0))

        status = await recheck_transaction("abstract", tx(1), store=seeded_store, tracer=tracer, result_cache=cache)

        assert status.logs[:5] == [
            f"Transaction: {tx(1)}",
            f"Seller: {SELLER}",
            "VDNT Sold: 1234.5",
            "Block: 777",
            "---",
        ]
        assert f"Tracing funding for {SELLER}" in status.logs

    @pytest.mark.asyncio
    async def test_hash_lookup_is_case_insensitive(self, seeded_store, cache):
        tracer = RecordingTracer(TraceResult.negative(0))
        status = await recheck_transaction(
            "abstract", tx(1).upper().replace("0X", "0x"), store=seeded_store, tracer=tracer, result_cache=cache
        )
        assert status is not None

    @pytest.mark.asyncio
    async def test_unknown_chain_rejected(self, store, cache):
        with pytest.raises(ValueError):
            await recheck_transaction("solana", tx(1), store=store, result_cache=cache)
