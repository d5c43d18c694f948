"""
Read-only access to the game's StorageCore contract via ``web3``.

Only four views are used: ``nextMinerId`` and ``miners(id)`` for the
registry scan, ``deposits(addr)`` and ``withdrawals(addr)`` for the
withdrawal ratio.  Every failure is re-raised as ``ContractCallError``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from web3 import AsyncWeb3, Web3

from ..constants import STORAGE_CORE_ABI, ZERO_ADDRESS
from ..errors import ContractCallError
from ..utils import normalize_address

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MinerInfo:
    miner_id: int
    owner: str
    miner_type: int
    lives: int

    @property
    def is_active(self) -> bool:
        return self.lives > 0


class GameContractReader:
    """StorageCore views for one chain."""

    def __init__(self, rpc_url: str, storage_address: str, *, chain: str, timeout: int = 15) -> None:
        self.chain = chain
        self._rpc_url = rpc_url
        self._storage_address = storage_address
        self._timeout = timeout
        self._w3: Optional[AsyncWeb3] = None
        self._contract: Any = None

    def _get_contract(self) -> Any:
        if self._contract is None:
            if not self._rpc_url or not self._storage_address:
                raise ContractCallError(
                    f"StorageCore not configured for {self.chain} (RPC URL / contract address missing)"
                )
            self._w3 = AsyncWeb3(
                AsyncWeb3.AsyncHTTPProvider(
                    self._rpc_url, request_kwargs={"timeout": self._timeout}
                )
            )
            self._contract = self._w3.eth.contract(
                address=Web3.to_checksum_address(self._storage_address),
                abi=STORAGE_CORE_ABI,
            )
        return self._contract

    async def close(self) -> None:
        if self._w3 is not None:
            disconnect = getattr(self._w3.provider, "disconnect", None)
            if disconnect is not None:
                await disconnect()
        self._w3 = None
        self._contract = None

    async def next_miner_id(self) -> int:
        try:
            return int(await self._get_contract().functions.nextMinerId().call())
        except ContractCallError:
            raise
        except Exception as exc:
            raise ContractCallError(f"nextMinerId() failed on {self.chain}: {exc}") from exc

    async def miner(self, miner_id: int) -> Optional[MinerInfo]:
        """The miner struct, or ``None`` when the slot has no owner."""
        try:
            raw = await self._get_contract().functions.miners(miner_id).call()
        except ContractCallError:
            raise
        except Exception as exc:
            raise ContractCallError(f"miners({miner_id}) failed on {self.chain}: {exc}") from exc
        owner = normalize_address(raw[0])
        if not owner or owner == ZERO_ADDRESS:
            return None
        return MinerInfo(miner_id=miner_id, owner=owner, miner_type=int(raw[1]), lives=int(raw[2]))

    async def deposits(self, address: str) -> int:
        return await self._address_view("deposits", address)

    async def withdrawals(self, address: str) -> int:
        return await self._address_view("withdrawals", address)

    async def _address_view(self, name: str, address: str) -> int:
        try:
            fn = getattr(self._get_contract().functions, name)
            return int(await fn(Web3.to_checksum_address(address)).call())
        except ContractCallError:
            raise
        except Exception as exc:
            raise ContractCallError(f"{name}({address}) failed on {self.chain}: {exc}") from exc
