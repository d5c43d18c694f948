"""
LP sell scanner.

For a block range, fetches two transfer streams for the chain's liquidity
pool (tokens in, value out), groups them by transaction hash and keeps the
transactions where the game token went *into* the pool and ETH / WETH /
VIRTUAL came *out*: those are sells.  Each seller is checked against the
Miner Registry in bulk and, when not a direct hit, run through the funding
tracer.  Rows are upserted in batches so an interrupted run keeps what it
already processed, and ``lp_scan_progress`` makes the scan resumable.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from config import (
    SELL_SCAN_BATCH_DELAY,
    SELL_SCAN_BATCH_SIZE,
    SELL_SCAN_BLOCK_RANGE,
    TRACE_MAX_DEPTH,
    TRACE_RESULT_TTL_SECONDS,
    TRANSFER_MAX_PAGES,
    TRANSFER_PAGE_DELAY,
    TRANSFER_PAGE_SIZE,
    ChainSettings,
    get_chain_settings,
)
from .cache import SQLiteCache
from .constants import CATEGORY_ERC20, CATEGORY_EXTERNAL
from .data_sources._clients import get_index_client, get_result_cache, get_store
from .data_sources.alchemy import AlchemyClient
from .errors import IndexProviderError, StoreError
from .funding_trace import FundingTracer, build_tracer
from .miner_registry import MinerRegistry
from .models import SellScanReport, SellTransaction, TraceResult, TransferRecord
from .store import SQLiteStore
from .utils import normalize_address

logger = logging.getLogger(__name__)


@dataclass
class SellCandidate:
    tx_hash: str
    seller: str
    token_amount: Decimal
    proceeds_amount: Decimal
    block_number: int
    timestamp: Optional[datetime]
    transfer_count: int


def trace_cache_key(chain: str, address: str) -> str:
    return f"trace:{chain}:{normalize_address(address)}"


def identify_sells(
    transfers_in: Iterable[TransferRecord],
    transfers_out: Iterable[TransferRecord],
    *,
    lp_address: str,
    token_symbol: str,
    proceeds_assets: frozenset[str],
    start_block: int,
    end_block: int,
) -> list[SellCandidate]:
    """Pair token-in and proceeds-out transfers of the same transaction.

    ``seller`` is the ``from`` of the first token transfer into the pool; the
    scanner later replaces it with the transaction sender when known.
    """
    lp = normalize_address(lp_address)
    by_hash: dict[str, list[tuple[str, TransferRecord]]] = {}
    for t in transfers_in:
        by_hash.setdefault(t.tx_hash, []).append(("in", t))
    for t in transfers_out:
        by_hash.setdefault(t.tx_hash, []).append(("out", t))

    sells: list[SellCandidate] = []
    for tx_hash, legs in by_hash.items():
        token_in = [
            t for direction, t in legs
            if direction == "in"
            and t.to_address == lp
            and t.category == CATEGORY_ERC20
            and t.asset == token_symbol
        ]
        proceeds_out = [
            t for direction, t in legs
            if direction == "out"
            and t.from_address == lp
            and (
                t.category == CATEGORY_EXTERNAL
                or (t.category == CATEGORY_ERC20 and t.asset.upper() in proceeds_assets)
            )
        ]
        if not token_in or not proceeds_out:
            continue
        first = token_in[0]
        if not start_block <= first.block_number <= end_block:
            continue
        sells.append(
            SellCandidate(
                tx_hash=tx_hash,
                seller=first.from_address,
                token_amount=sum((t.value or Decimal(0) for t in token_in), Decimal(0)),
                proceeds_amount=sum((t.value or Decimal(0) for t in proceeds_out), Decimal(0)),
                block_number=first.block_number,
                timestamp=first.timestamp,
                transfer_count=len(legs),
            )
        )
    return sells


class SellScanner:
    """Discovers, classifies and persists LP sells for one chain."""

    def __init__(
        self,
        settings: ChainSettings,
        index: AlchemyClient,
        store: SQLiteStore,
        registry: MinerRegistry,
        tracer: FundingTracer,
        *,
        result_cache: Optional[SQLiteCache] = None,
        batch_size: int = SELL_SCAN_BATCH_SIZE,
        batch_delay: float = SELL_SCAN_BATCH_DELAY,
        block_range: int = SELL_SCAN_BLOCK_RANGE,
        page_size: int = TRANSFER_PAGE_SIZE,
        max_pages: int = TRANSFER_MAX_PAGES,
        page_delay: float = TRANSFER_PAGE_DELAY,
    ) -> None:
        self.settings = settings
        self.chain = settings.name
        self._index = index
        self._store = store
        self._registry = registry
        self._tracer = tracer
        self._result_cache = result_cache
        self._batch_size = batch_size
        self._batch_delay = batch_delay
        self._block_range = block_range
        self._page_size = page_size
        self._max_pages = max_pages
        self._page_delay = page_delay

    async def process_next_range(self) -> Optional[SellScanReport]:
        """Scan the range after the stored cursor, clamped to the chain head.

        Returns ``None`` when the scanner is already at the head.
        """
        latest = await self._index.get_block_number()
        rng = await self._store.next_block_range(
            self.chain, self._block_range, self.settings.lp_scan_start_block
        )
        if rng.start_block >= latest:
            logger.info("[sell-scan] %s is up to date (block %d >= %d)", self.chain, rng.start_block, latest)
            return None
        return await self.scan_range(rng.start_block, min(rng.end_block, latest))

    async def scan_range(self, start_block: int, end_block: int) -> SellScanReport:
        """Scan one block range and persist its sells.

        The LP scan cursor only moves past *end_block* when every batch was
        saved; otherwise the next run covers the same range again.
        """
        report = SellScanReport(chain=self.chain, start_block=start_block, end_block=end_block)
        if start_block >= end_block:
            logger.warning(
                "[sell-scan] %s: empty range %d-%d, advancing cursor only",
                self.chain, start_block, end_block,
            )
            await self._store.update_lp_scan_progress(self.chain, end_block, 0)
            return report

        logger.info("[sell-scan] %s: blocks %d-%d", self.chain, start_block, end_block)
        candidates = identify_sells(
            await self._fetch(
                {"toAddress": self.settings.lp_address, "category": [CATEGORY_ERC20]},
                start_block, end_block,
            ),
            await self._fetch(
                {"fromAddress": self.settings.lp_address, "category": [CATEGORY_EXTERNAL, CATEGORY_ERC20]},
                start_block, end_block,
            ),
            lp_address=self.settings.lp_address,
            token_symbol=self.settings.token_symbol,
            proceeds_assets=self.settings.proceeds_assets,
            start_block=start_block,
            end_block=end_block,
        )
        report.sells_found = len(candidates)
        if not candidates:
            logger.info("[sell-scan] %s: no sells in %d-%d", self.chain, start_block, end_block)
            await self._store.update_lp_scan_progress(self.chain, end_block, 0)
            return report

        for c in candidates:
            c.seller = await self._resolve_seller(c)
        direct = await self._direct_miners(c.seller for c in candidates)

        total_batches = (len(candidates) + self._batch_size - 1) // self._batch_size
        for n, i in enumerate(range(0, len(candidates), self._batch_size), start=1):
            batch = candidates[i : i + self._batch_size]
            rows = [await self._classify(c, direct) for c in batch]
            report.direct_miners += sum(r.is_direct_miner for r in rows)
            report.indirect_miners += sum(r.is_indirect_miner for r in rows)
            try:
                report.persisted += await self._store.upsert_sell_transactions(rows)
                logger.info("[sell-scan] %s: saved batch %d/%d (%d rows)", self.chain, n, total_batches, len(rows))
            except StoreError:
                report.failed_batches += 1
                logger.exception("[sell-scan] %s: batch %d/%d not saved", self.chain, n, total_batches)
            if n < total_batches and self._batch_delay:
                await asyncio.sleep(self._batch_delay)

        if report.failed_batches:
            logger.warning(
                "[sell-scan] %s: %d batch(es) not saved, progress stays before block %d",
                self.chain, report.failed_batches, start_block,
            )
        else:
            await self._store.update_lp_scan_progress(self.chain, end_block, report.persisted)
        logger.info(
            "[sell-scan] %s: %d sells (%d direct, %d indirect) in %d-%d, %d saved",
            self.chain, report.sells_found, report.direct_miners, report.indirect_miners,
            start_block, end_block, report.persisted,
        )
        return report

    async def _fetch(self, params: dict, start_block: int, end_block: int) -> list[TransferRecord]:
        query = dict(params, withMetadata=True, order="desc", excludeZeroValue=False)
        return [
            t async for t in self._index.iter_transfers(
                query,
                from_block=start_block,
                to_block=end_block,
                page_size=self._page_size,
                max_pages=self._max_pages,
                page_delay=self._page_delay,
            )
        ]

    async def _resolve_seller(self, candidate: SellCandidate) -> str:
        try:
            sender = await self._index.get_transaction_sender(candidate.tx_hash)
        except IndexProviderError as exc:
            logger.warning("[sell-scan] sender lookup failed for %s: %s", candidate.tx_hash, exc)
            sender = None
        return sender or candidate.seller

    async def _direct_miners(self, sellers: Iterable[str]) -> set[str]:
        try:
            return await self._registry.known_among(sellers)
        except StoreError:
            logger.exception("[sell-scan] %s: bulk miner lookup failed, tracing every seller", self.chain)
            return set()

    async def _classify(self, candidate: SellCandidate, direct: set[str]) -> SellTransaction:
        row = SellTransaction(
            chain=self.chain,
            tx_hash=candidate.tx_hash,
            seller_address=candidate.seller,
            token_amount=float(candidate.token_amount),
            token_symbol=self.settings.token_symbol,
            proceeds_amount=float(candidate.proceeds_amount),
            proceeds_symbol=self.settings.proceeds_symbol,
            block_number=candidate.block_number,
            block_timestamp=candidate.timestamp,
            transfer_count=candidate.transfer_count,
        )
        if candidate.seller in direct:
            row.mark_direct()
        else:
            row.apply_trace(await self.trace_seller(candidate.seller))
        return row

    async def trace_seller(self, seller: str) -> TraceResult:
        """Persistent cache first, then the tracer; linked results are cached."""
        key = trace_cache_key(self.chain, seller)
        if self._result_cache is not None:
            cached = await self._result_cache.get(key)
            if cached is not None:
                return TraceResult.model_validate(cached)
        result = await self._tracer.trace(seller, max_depth=TRACE_MAX_DEPTH)
        if result.is_linked_to_miner and self._result_cache is not None:
            await self._result_cache.set(key, result, ttl=TRACE_RESULT_TTL_SECONDS)
        return result


def build_sell_scanner(chain: str) -> SellScanner:
    """A scanner wired to the shared clients."""
    store = get_store()
    return SellScanner(
        get_chain_settings(chain),
        get_index_client(chain),
        store,
        MinerRegistry(store, chain),
        build_tracer(chain),
        result_cache=get_result_cache(),
    )


async def process_next_range(chain: str) -> Optional[SellScanReport]:
    return await build_sell_scanner(chain).process_next_range()
