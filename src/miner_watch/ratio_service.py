"""
Withdrawal ratio of miner owners: ether withdrawn from the game divided by
ether deposited into it, read from StorageCore and cached in the store.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from config import get_chain_settings
from .constants import ETHER_DECIMALS, NO_DEPOSIT_RATIO
from .data_sources._clients import get_contract_reader, get_store
from .data_sources.contracts import GameContractReader
from .errors import ContractCallError
from .models import AddressMetrics, SellOwnershipStats
from .store import SQLiteStore
from .utils import normalize_address

logger = logging.getLogger(__name__)

_WEI = Decimal(10) ** ETHER_DECIMALS
_CENT = Decimal("0.01")


def _to_ether(wei: int) -> Decimal:
    return (Decimal(wei) / _WEI).quantize(_CENT, rounding=ROUND_HALF_UP)


def compute_ratio(address: str, chain: str, deposits_wei: int, withdrawals_wei: int) -> AddressMetrics:
    """Build the ratio row for one address.

    ``999`` flags withdrawals without any deposit; ``0`` means no activity.
    """
    deposits = _to_ether(deposits_wei)
    withdrawals = _to_ether(withdrawals_wei)
    if deposits_wei > 0:
        ratio = float((Decimal(withdrawals_wei) / Decimal(deposits_wei)).quantize(_CENT, rounding=ROUND_HALF_UP))
    elif withdrawals_wei > 0:
        ratio = NO_DEPOSIT_RATIO
    else:
        ratio = 0.0
    return AddressMetrics(
        address=normalize_address(address),
        chain=chain,
        total_deposits=float(deposits),
        total_withdrawals=float(withdrawals),
        ratio=ratio,
        last_calculated_at=datetime.now(tz=timezone.utc),
    )


async def address_metrics(
    chain: str,
    address: str,
    *,
    reader: Optional[GameContractReader] = None,
) -> AddressMetrics:
    """Live deposits and withdrawals for one address, read from StorageCore.

    Nothing is stored; ``ContractCallError`` propagates to the caller.
    """
    get_chain_settings(chain)
    reader = reader or get_contract_reader(chain)
    deposits, withdrawals = await asyncio.gather(
        reader.deposits(address), reader.withdrawals(address)
    )
    return compute_ratio(address, chain, deposits, withdrawals)


async def refresh_ratios(
    chain: str,
    *,
    limit: int = 50,
    reader: Optional[GameContractReader] = None,
    store: Optional[SQLiteStore] = None,
) -> int:
    """Compute and store ratios for registry addresses that have none yet."""
    get_chain_settings(chain)
    reader = reader or get_contract_reader(chain)
    store = store or get_store()

    addresses = await store.addresses_needing_ratio(chain, limit=limit)
    if not addresses:
        logger.info("[ratios] %s: every registered address already has a ratio", chain)
        return 0

    stored = 0
    for address in addresses:
        try:
            deposits = await reader.deposits(address)
            withdrawals = await reader.withdrawals(address)
        except ContractCallError as exc:
            logger.warning("[ratios] %s: skipping %s: %s", chain, address, exc)
            continue
        await store.store_ratio(compute_ratio(address, chain, deposits, withdrawals))
        stored += 1

    logger.info("[ratios] %s: stored %d/%d ratios", chain, stored, len(addresses))
    return stored


async def sell_ownership_stats(chain: str, *, store: Optional[SQLiteStore] = None) -> SellOwnershipStats:
    get_chain_settings(chain)
    return await (store or get_store()).sell_stats(chain)
