"""Tests for GameContractReader (contracts.py) with a mocked web3 contract."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import addr
from miner_watch.data_sources.contracts import GameContractReader, MinerInfo
from miner_watch.errors import ContractCallError


def _reader_with(**views) -> GameContractReader:
    """Reader whose contract functions return (or raise) the given values."""
    reader = GameContractReader("https://rpc.example", addr(0x5C), chain="abstract")
    contract = MagicMock()
    for name, outcome in views.items():
        call = AsyncMock(side_effect=outcome) if isinstance(outcome, Exception) else AsyncMock(return_value=outcome)
        fn = MagicMock(return_value=MagicMock(call=call))
        setattr(contract.functions, name, fn)
    reader._contract = contract
    return reader


class TestGameContractReader:

    @pytest.mark.asyncio
    async def test_next_miner_id(self):
        assert await _reader_with(nextMinerId=42).next_miner_id() == 42

    @pytest.mark.asyncio
    async def test_miner_struct(self):
        owner = addr(0xAB).upper().replace("0X", "0x")
        info = await _reader_with(miners=(owner, 2, 3)).miner(7)

        assert info == MinerInfo(miner_id=7, owner=addr(0xAB), miner_type=2, lives=3)
        assert info.is_active

    @pytest.mark.asyncio
    async def test_unowned_slot_is_none(self):
        reader = _reader_with(miners=("0x" + "0" * 40, 0, 0))
        assert await reader.miner(1) is None

    @pytest.mark.asyncio
    async def test_address_views(self):
        reader = _reader_with(deposits=10**18, withdrawals=3 * 10**18)
        assert await reader.deposits(addr(1)) == 10**18
        assert await reader.withdrawals(addr(1)) == 3 * 10**18

    @pytest.mark.asyncio
    async def test_failures_wrapped(self):
        reader = _reader_with(nextMinerId=RuntimeError("execution reverted"))
        with pytest.raises(ContractCallError, match="nextMinerId"):
            await reader.next_miner_id()

    @pytest.mark.asyncio
    async def test_unconfigured_contract(self):
        reader = GameContractReader("", "", chain="base")
        with pytest.raises(ContractCallError, match="not configured"):
            await reader.miner(1)
