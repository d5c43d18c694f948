"""
Recheck of a single stored sell.

Re-runs the direct miner check and, when negative, the logging variant of
the funding trace with a fresh visited set, no memo and a larger page
budget.  The stored trace fields and the persistent result-cache entry for
the seller are overwritten with the new outcome.
"""

from __future__ import annotations

import logging
from typing import Optional

from config import TRACE_MAX_DEPTH, TRACE_RECHECK_MAX_PAGES, get_chain_settings
from .cache import SQLiteCache
from .data_sources._clients import get_result_cache, get_store
from .funding_trace import FundingTracer, build_tracer
from .models import MinerStatus, TraceResult
from .sell_scanner import trace_cache_key
from .store import SQLiteStore

logger = logging.getLogger(__name__)


async def recheck_transaction(
    chain: str,
    tx_hash: str,
    *,
    store: Optional[SQLiteStore] = None,
    tracer: Optional[FundingTracer] = None,
    result_cache: Optional[SQLiteCache] = None,
) -> Optional[MinerStatus]:
    """Recompute and persist the miner link of *tx_hash*.

    Returns ``None`` when no sell with that hash is stored for *chain*.
    Store failures propagate.
    """
    settings = get_chain_settings(chain)
    store = store or get_store()
    result_cache = result_cache or get_result_cache()

    row = await store.get_sell_transaction(chain, tx_hash)
    if row is None:
        return None

    seller = row.seller_address
    logs = [
        f"Transaction: {row.tx_hash}",
        f"Seller: {seller}",
        f"{row.token_symbol or settings.token_symbol} Sold: {row.token_amount}",
        f"Block: {row.block_number}",
        "---",
    ]

    if await store.is_known_miner(chain, seller):
        logs.append(f"{seller} is a known miner owner")
        status = MinerStatus(
            is_miner=True,
            miner_connection=seller,
            trace_depth=0,
            trace_path=[seller],
            logs=logs,
        )
        result = TraceResult.direct(seller, 0)
    else:
        logs.append(f"{seller} is not a miner owner, tracing funding sources")
        tracer = tracer or build_tracer(chain, use_memo=False, max_pages=TRACE_RECHECK_MAX_PAGES)
        result = await tracer.trace(seller, max_depth=TRACE_MAX_DEPTH, visited=set(), logs=logs)
        status = MinerStatus(
            is_indirect_miner=result.is_linked_to_miner,
            miner_connection=result.miner_address if result.is_linked_to_miner else None,
            trace_depth=result.trace_depth,
            trace_path=result.trace_path if result.is_linked_to_miner else None,
            logs=logs,
        )

    await store.update_trace_outcome(
        chain,
        row.tx_hash,
        is_direct_miner=status.is_miner,
        is_indirect_miner=status.is_indirect_miner,
        miner_address=status.miner_connection,
        trace_depth=status.trace_depth,
        trace_path=status.trace_path,
    )

    if not status.is_miner:
        key = trace_cache_key(chain, seller)
        if result.is_linked_to_miner:
            await result_cache.set(key, result)
        else:
            await result_cache.invalidate(key)

    logger.info(
        "[recheck] %s %s: direct=%s indirect=%s miner=%s",
        chain, row.tx_hash, status.is_miner, status.is_indirect_miner, status.miner_connection,
    )
    return status
