"""Tests for SQLiteStore (store.py) against a temporary database file."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import addr, tx
from miner_watch.errors import StoreError
from miner_watch.models import AddressMetrics, SellTransaction
from miner_watch.store import SQLiteStore


def _sell(n: int, *, chain: str = "abstract", block: int = 100, **kwargs) -> SellTransaction:
    kwargs.setdefault("token_amount", 10.0 * n)
    return SellTransaction(
        chain=chain,
        tx_hash=tx(n),
        seller_address=addr(n),
        block_number=block,
        block_timestamp=datetime(2025, 3, 1, tzinfo=timezone.utc),
        **kwargs,
    )


# ===================================================================
# Miner registry
# ===================================================================


class TestMinerRegistry:

    @pytest.mark.asyncio
    async def test_membership_is_case_insensitive(self, store):
        owner = addr(0xAB)
        await store.store_miner_addresses("abstract", {owner.upper().replace("0X", "0x"): (2, 1)})

        assert await store.is_known_miner("abstract", owner)
        assert await store.is_known_miner("abstract", owner.upper().replace("0X", "0x"))
        assert not await store.is_known_miner("base", owner)

    @pytest.mark.asyncio
    async def test_new_owner_count_and_increments(self, store):
        a, b = addr(1), addr(2)
        assert await store.store_miner_addresses("abstract", {a: (1, 1)}) == 1
        assert await store.store_miner_addresses("abstract", {a: (2, 0), b: (1, 0)}) == 1
        assert await store.count_miner_addresses("abstract") == 2
        assert await store.list_miner_addresses("abstract") == [a, b]
        assert await store.list_miner_addresses("abstract", limit=1) == [a]

    @pytest.mark.asyncio
    async def test_known_among(self, store):
        owners = {addr(i): (1, 1) for i in range(1, 4)}
        await store.store_miner_addresses("base", owners)

        found = await store.known_miners_among("base", [addr(1), addr(3), addr(9), ""])

        assert found == {addr(1), addr(3)}

    @pytest.mark.asyncio
    async def test_scan_progress(self, store):
        assert await store.get_scan_progress("abstract") == (0, 0)
        await store.update_scan_progress("abstract", 250, 40)
        assert await store.get_scan_progress("abstract") == (250, 40)
        await store.reset_scan_progress("abstract")
        assert await store.get_scan_progress("abstract") == (0, 0)


# ===================================================================
# Sells
# ===================================================================


class TestSells:

    @pytest.mark.asyncio
    async def test_upsert_roundtrip(self, store):
        row = _sell(1, is_indirect_miner=True, miner_address=addr(0xBEEF),
                    trace_depth=0, trace_path=[addr(1), addr(0xBEEF)])
        assert await store.upsert_sell_transactions([row]) == 1

        got = await store.get_sell_transaction("abstract", tx(1))

        assert got.seller_address == addr(1)
        assert got.is_indirect_miner is True
        assert got.trace_path == [addr(1), addr(0xBEEF)]
        assert got.block_timestamp == datetime(2025, 3, 1, tzinfo=timezone.utc)
        assert got.created_at is not None

    @pytest.mark.asyncio
    async def test_one_row_per_chain_and_hash(self, store):
        await store.upsert_sell_transactions([_sell(1), _sell(2)])
        await store.upsert_sell_transactions([_sell(1, token_amount=99.0), _sell(1, chain="base")])

        assert await store.count_sell_transactions("abstract") == 2
        assert await store.count_sell_transactions("base") == 1
        assert (await store.get_sell_transaction("abstract", tx(1))).token_amount == 99.0

    @pytest.mark.asyncio
    async def test_list_newest_block_first(self, store):
        await store.upsert_sell_transactions([_sell(1, block=10), _sell(2, block=30), _sell(3, block=20)])

        rows = await store.list_sell_transactions("abstract", limit=2, offset=0)
        assert [r.tx_hash for r in rows] == [tx(2), tx(3)]
        rows = await store.list_sell_transactions("abstract", limit=2, offset=2)
        assert [r.tx_hash for r in rows] == [tx(1)]
        assert await store.all_sell_hashes("abstract") == [tx(2), tx(3), tx(1)]

    @pytest.mark.asyncio
    async def test_update_trace_outcome(self, store):
        await store.upsert_sell_transactions([_sell(1)])

        ok = await store.update_trace_outcome(
            "abstract", tx(1),
            is_direct_miner=False, is_indirect_miner=True,
            miner_address=addr(0xBEEF), trace_depth=0, trace_path=[addr(1), addr(0xBEEF)],
        )
        missing = await store.update_trace_outcome(
            "abstract", tx(2),
            is_direct_miner=False, is_indirect_miner=False,
            miner_address=None, trace_depth=0, trace_path=None,
        )

        assert ok is True and missing is False
        assert (await store.get_sell_transaction("abstract", tx(1))).miner_address == addr(0xBEEF)

    @pytest.mark.asyncio
    async def test_sell_stats(self, store):
        await store.upsert_sell_transactions([
            _sell(1, is_direct_miner=True),
            _sell(2, is_indirect_miner=True),
            _sell(3),
            _sell(4),
        ])

        stats = await store.sell_stats("abstract")

        assert stats.total_sells == 4
        assert stats.direct_miner_sells == 1
        assert stats.indirect_miner_sells == 1
        assert stats.non_miner_sells == 2
        assert stats.total_token_sold == pytest.approx(100.0)
        assert stats.miner_token_sold == pytest.approx(30.0)
        assert stats.miner_linked_share == 0.5

    @pytest.mark.asyncio
    async def test_sell_stats_empty_chain(self, store):
        stats = await store.sell_stats("base")
        assert stats.total_sells == 0
        assert stats.miner_linked_share == 0.0


# ===================================================================
# LP scan progress
# ===================================================================


class TestLpScanProgress:

    @pytest.mark.asyncio
    async def test_first_range_uses_start_block(self, store):
        rng = await store.next_block_range("abstract", 1000, start_block=5_000)
        assert (rng.start_block, rng.end_block) == (5_000, 5_999)

    @pytest.mark.asyncio
    async def test_progress_accumulates_and_never_goes_back(self, store):
        await store.update_lp_scan_progress("abstract", 2_000, 5)
        await store.update_lp_scan_progress("abstract", 1_500, 3)

        progress = await store.get_lp_scan_progress("abstract")
        assert progress.last_scanned_block == 2_000
        assert progress.total_transactions == 8

        rng = await store.next_block_range("abstract", 100)
        assert (rng.start_block, rng.end_block) == (2_001, 2_100)


# ===================================================================
# Ratios and reset
# ===================================================================


class TestRatios:

    @pytest.mark.asyncio
    async def test_store_ratio_picks_up_miner_counts(self, store):
        owner = addr(7)
        await store.store_miner_addresses("abstract", {owner: (3, 2)})
        await store.store_ratio(AddressMetrics(address=owner, chain="abstract",
                                               total_deposits=1.0, total_withdrawals=2.5, ratio=2.5))

        (row,) = await store.cached_ratios("abstract")

        assert row.ratio == 2.5
        assert row.total_miners == 3
        assert row.active_miners == 2
        assert row.last_calculated_at is not None

    @pytest.mark.asyncio
    async def test_addresses_needing_ratio(self, store):
        await store.store_miner_addresses("abstract", {addr(1): (1, 1), addr(2): (1, 1)})
        await store.store_ratio(AddressMetrics(address=addr(1), chain="abstract"))

        assert await store.addresses_needing_ratio("abstract") == [addr(2)]

    @pytest.mark.asyncio
    async def test_ratios_ordered_highest_first(self, store):
        for n, ratio in ((1, 0.5), (2, 999.0), (3, 1.2)):
            await store.store_ratio(AddressMetrics(address=addr(n), chain="base", ratio=ratio))

        rows = await store.cached_ratios("base", limit=2)

        assert [r.address for r in rows] == [addr(2), addr(3)]

    @pytest.mark.asyncio
    async def test_clear_chain_only_touches_that_chain(self, store):
        await store.store_miner_addresses("abstract", {addr(1): (1, 1)})
        await store.store_miner_addresses("base", {addr(1): (1, 1)})
        await store.upsert_sell_transactions([_sell(1), _sell(2, chain="base")])
        await store.update_lp_scan_progress("abstract", 10, 1)

        deleted = await store.clear_chain("abstract")

        assert deleted["lp_sell_transactions"] == 1
        assert deleted["miner_addresses"] == 1
        assert await store.count_sell_transactions("abstract") == 0
        assert await store.count_sell_transactions("base") == 1
        assert (await store.get_lp_scan_progress("abstract")).last_scanned_block == 0


class TestStoreErrors:

    @pytest.mark.asyncio
    async def test_unopenable_path_raises_store_error(self, tmp_path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x")
        s = SQLiteStore(str(blocker / "db.sqlite"))
        with pytest.raises(StoreError):
            await s.is_known_miner("abstract", addr(1))
