"""
Miner Registry: which wallets own at least one miner, per chain.

``MinerRegistry`` is the lookup the funding tracer and the sell scanner
use.  ``scan_miner_owners`` fills it incrementally from the StorageCore
contract, resuming from the last miner id it checked.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Iterable, Optional

from config import MINER_SCAN_BATCH_DELAY, MINER_SCAN_BATCH_SIZE, get_chain_settings
from .data_sources._clients import get_contract_reader, get_store
from .data_sources.contracts import GameContractReader, MinerInfo
from .errors import ContractCallError
from .models import MinerScanResult
from .store import SQLiteStore
from .utils import normalize_address

logger = logging.getLogger(__name__)

# Base's Alchemy plan rejects larger bursts of eth_call.
_MAX_BATCH_BY_CHAIN = {"base": 15}


class MinerRegistry:
    """Case-insensitive membership test against one chain's partition."""

    def __init__(self, store: SQLiteStore, chain: str) -> None:
        self._store = store
        self.chain = chain

    async def is_known_miner(self, address: str) -> bool:
        return await self._store.is_known_miner(self.chain, normalize_address(address))

    async def known_among(self, addresses: Iterable[str]) -> set[str]:
        return await self._store.known_miners_among(self.chain, addresses)


async def scan_miner_owners(
    chain: str,
    *,
    max_miners: int = 100,
    batch_size: int = MINER_SCAN_BATCH_SIZE,
    batch_delay: float = MINER_SCAN_BATCH_DELAY,
    reader: Optional[GameContractReader] = None,
    store: Optional[SQLiteStore] = None,
) -> MinerScanResult:
    """Scan the next *max_miners* miner ids and register their owners.

    Ids are read concurrently within a batch; a failed read for one id is
    logged and skipped.  Failure to read ``nextMinerId`` propagates.
    """
    get_chain_settings(chain)
    reader = reader or get_contract_reader(chain)
    store = store or get_store()
    batch_size = min(batch_size, _MAX_BATCH_BY_CHAIN.get(chain, batch_size))

    last_checked, found_so_far = await store.get_scan_progress(chain)
    total_in_contract = await reader.next_miner_id() - 1
    first = last_checked + 1
    last = min(last_checked + max_miners, total_in_contract)

    if first > total_in_contract:
        logger.info("[miner-scan] %s: all %d miners already scanned", chain, total_in_contract)
        return MinerScanResult(
            chain=chain,
            last_checked_id=total_in_contract,
            has_more=False,
            total_miners_in_contract=total_in_contract,
        )

    logger.info("[miner-scan] %s: scanning miners %d-%d of %d", chain, first, last, total_in_contract)
    owners: dict[str, list[int]] = defaultdict(lambda: [0, 0])
    last_processed = last_checked

    for batch_start in range(first, last + 1, batch_size):
        batch_ids = range(batch_start, min(batch_start + batch_size - 1, last) + 1)
        results = await asyncio.gather(
            *(reader.miner(i) for i in batch_ids), return_exceptions=True
        )
        for miner_id, res in zip(batch_ids, results):
            last_processed = max(last_processed, miner_id)
            if isinstance(res, ContractCallError):
                logger.debug("[miner-scan] %s: miner %d skipped: %s", chain, miner_id, res)
                continue
            if isinstance(res, BaseException):
                raise res
            if isinstance(res, MinerInfo):
                counts = owners[res.owner]
                counts[0] += 1
                counts[1] += int(res.is_active)
        if batch_start + batch_size <= last and batch_delay:
            await asyncio.sleep(batch_delay)

    new_count = await store.store_miner_addresses(
        chain, {addr: (c[0], c[1]) for addr, c in owners.items()}
    )
    await store.update_scan_progress(chain, last_processed, found_so_far + new_count)
    logger.info(
        "[miner-scan] %s: %d owners seen, %d new, progress=%d/%d",
        chain, len(owners), new_count, last_processed, total_in_contract,
    )
    return MinerScanResult(
        chain=chain,
        addresses=sorted(owners),
        last_checked_id=last_processed,
        total_scanned=last_processed - last_checked,
        has_more=last < total_in_contract,
        total_miners_in_contract=total_in_contract,
        new_addresses=new_count,
    )
