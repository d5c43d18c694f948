"""
Funding trace: is a seller wallet funded, directly or through a chain of
token transfers, by a wallet that owns a miner?

The search walks *backwards* through incoming token transfers:

1. A node past ``max_depth`` or already in ``visited`` is a dead end.
2. Otherwise it is marked visited; a memo hit answers immediately.
3. A Miner Registry hit is the success terminal.
4. Else the node's incoming transfers are fetched (newest first, a few
   pages of up to 1000), senders that are game contracts, the zero
   address, the LP or a swap router are dropped, and the first
   ``branch_limit`` distinct remaining senders are explored depth-first,
   left to right, stopping at the first linked child.

The walk runs on an explicit stack of frames rather than recursion.  A
linked result reports ``trace_depth`` of the frame the successful edge was
taken from (the root frame for a full trace, i.e. 0), and ``trace_path``
from the queried address to the miner.

Errors while checking one node are absorbed into a negative result for
that node, counted in ``TRACE_METRICS`` and logged as a structured event.

The memo is keyed by chain, address, depth and ``max_depth``, and only
holds answers that a later call would recompute the same way.  A result
built on an absorbed error or on a sender skipped because this call had
already visited it is not stored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

from config import (
    TRACE_BRANCH_LIMIT,
    TRACE_MAX_DEPTH,
    TRACE_MAX_PAGES,
    TRACE_PAGE_SIZE,
    ChainSettings,
    get_chain_settings,
)
from .cache import TTLCache
from .data_sources._clients import get_index_client, get_store, get_trace_memo
from .metrics import TRACE_METRICS, TraceMetrics
from .miner_registry import MinerRegistry
from .models import TraceResult, TransferRecord
from .utils import normalize_address

logger = logging.getLogger(__name__)


class TransferIndex(Protocol):
    async def get_incoming_transfers(
        self,
        address: str,
        token_contract: str,
        *,
        page_key: Optional[str] = None,
        max_count: int = 1000,
    ) -> tuple[list[TransferRecord], Optional[str]]: ...


class MinerLookup(Protocol):
    async def is_known_miner(self, address: str) -> bool: ...


# ---------------------------------------------------------------------------
# Sender filtering
# ---------------------------------------------------------------------------

def is_excluded_sender(sender: str, excluded: frozenset[str]) -> bool:
    """True when *sender* never counts as a funding source (case-insensitive)."""
    return normalize_address(sender) in excluded


def candidate_senders(
    transfers: Iterable[TransferRecord],
    address: str,
    excluded: frozenset[str],
    limit: int = TRACE_BRANCH_LIMIT,
) -> list[str]:
    """First *limit* distinct, non-self, non-excluded senders, in index order."""
    own = normalize_address(address)
    picked: list[str] = []
    for t in transfers:
        sender = normalize_address(t.from_address)
        if not sender or sender == own or sender in picked:
            continue
        if is_excluded_sender(sender, excluded):
            continue
        picked.append(sender)
        if len(picked) >= limit:
            break
    return picked


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

@dataclass
class _Frame:
    address: str
    depth: int
    senders: list[str]
    cursor: int = 0
    tainted: bool = False  # some child answer depended on this call, not just the graph


@dataclass
class _Entered:
    """What entering a node produced: a final answer or a frame to expand."""

    result: Optional[TraceResult] = None
    frame: Optional[_Frame] = None
    tainted: bool = False


@dataclass
class _StepLog:
    lines: Optional[list[str]] = field(default=None)

    def add(self, depth: int, message: str) -> None:
        if self.lines is not None:
            self.lines.append(f"{'  ' * depth}{message}")


def _crosses(result: TraceResult, visited: set[str]) -> bool:
    """True when a linked path runs through a node this call already holds."""
    return any(hop in visited for hop in (result.trace_path or [])[1:])


class FundingTracer:
    """Depth-first funding trace over one chain's transfer index."""

    def __init__(
        self,
        index: TransferIndex,
        registry: MinerLookup,
        settings: ChainSettings,
        *,
        memo: Optional[TTLCache] = None,
        metrics: TraceMetrics = TRACE_METRICS,
        max_pages: int = TRACE_MAX_PAGES,
        page_size: int = TRACE_PAGE_SIZE,
        branch_limit: int = TRACE_BRANCH_LIMIT,
    ) -> None:
        self._index = index
        self._registry = registry
        self._settings = settings
        self._excluded = settings.excluded_senders
        self._memo = memo
        self._metrics = metrics
        self._max_pages = max_pages
        self._page_size = page_size
        self._branch_limit = branch_limit

    @property
    def chain(self) -> str:
        return self._settings.name

    async def trace(
        self,
        address: str,
        *,
        depth: int = 0,
        max_depth: int = TRACE_MAX_DEPTH,
        visited: Optional[set[str]] = None,
        logs: Optional[list[str]] = None,
    ) -> TraceResult:
        """Trace *address* back to a miner owner.

        ``visited`` is borrowed and extended when given; by default each
        call owns a fresh set.  When ``logs`` is a list, a human-readable
        line is appended for every step.
        """
        if max_depth < 0:
            raise ValueError("max_depth must be a non-negative integer")
        visited = set() if visited is None else visited
        step_log = _StepLog(logs)
        self._metrics.traces_started += 1
        root = normalize_address(address)
        step_log.add(0, f"Tracing funding for {root} on {self.chain} (max depth {max_depth})")

        result = await self._walk(root, depth, max_depth, visited, step_log)

        if result.is_linked_to_miner:
            self._metrics.traces_linked += 1
            step_log.add(0, f"Linked to miner {result.miner_address} via {' -> '.join(result.trace_path or [])}")
            logger.info(
                "[funding-trace] %s linked to miner %s (%s, %d hops)",
                root, result.miner_address, self.chain, len(result.trace_path or []) - 1,
            )
        else:
            step_log.add(0, "No miner connection found")
            logger.debug("[funding-trace] %s: no miner connection (%s)", root, self.chain)
        return result

    async def _walk(
        self,
        root: str,
        depth: int,
        max_depth: int,
        visited: set[str],
        step_log: _StepLog,
    ) -> TraceResult:
        entered = await self._enter(root, depth, max_depth, visited, step_log)
        if entered.frame is None:
            return entered.result  # type: ignore[return-value]

        stack: list[_Frame] = [entered.frame]
        last: Optional[TraceResult] = None
        last_tainted = False

        while stack:
            frame = stack[-1]

            frame.tainted = frame.tainted or last_tainted
            if last is not None and last.is_linked_to_miner:
                last = TraceResult(
                    is_linked_to_miner=True,
                    trace_depth=frame.depth,
                    miner_address=last.miner_address,
                    trace_path=[frame.address, *(last.trace_path or [last.miner_address])],
                )
                last_tainted = frame.tainted
                if not frame.tainted:
                    self._remember(frame.address, frame.depth, max_depth, last)
                stack.pop()
                continue

            last, last_tainted = None, False

            if frame.cursor >= len(frame.senders):
                last = TraceResult.negative(frame.depth)
                last_tainted = frame.tainted
                if not frame.tainted:
                    self._remember(frame.address, frame.depth, max_depth, last)
                stack.pop()
                continue

            sender = frame.senders[frame.cursor]
            frame.cursor += 1
            child = await self._enter(sender, frame.depth + 1, max_depth, visited, step_log)
            if child.frame is not None:
                stack.append(child.frame)
            else:
                last, last_tainted = child.result, child.tainted

        return last  # type: ignore[return-value]

    async def _enter(
        self,
        address: str,
        depth: int,
        max_depth: int,
        visited: set[str],
        step_log: _StepLog,
    ) -> _Entered:
        if depth > max_depth:
            step_log.add(depth, f"{address}: depth budget exhausted")
            return _Entered(result=TraceResult.negative(depth))
        if address in visited:
            step_log.add(depth, f"{address}: already visited")
            return _Entered(result=TraceResult.negative(depth), tainted=True)

        visited.add(address)
        self._metrics.nodes_visited += 1

        if self._memo is not None:
            cached = self._memo.get(self._memo_key(address, depth, max_depth))
            if cached is not None and not _crosses(cached, visited):
                self._metrics.memo_hits += 1
                step_log.add(depth, f"{address}: cached result (linked={cached.is_linked_to_miner})")
                return _Entered(result=cached.model_copy(deep=True))

        try:
            is_miner = await self._registry.is_known_miner(address)
        except Exception as exc:
            return self._absorb(address, depth, "registry_lookup", exc, step_log)
        if is_miner:
            step_log.add(depth, f"{address}: known miner owner")
            result = TraceResult.direct(address, depth)
            self._remember(address, depth, max_depth, result)
            return _Entered(result=result)

        try:
            transfers = await self._fetch_incoming(address)
        except Exception as exc:
            return self._absorb(address, depth, "transfer_fetch", exc, step_log)

        senders = candidate_senders(transfers, address, self._excluded, self._branch_limit)
        step_log.add(
            depth,
            f"{address}: {len(transfers)} incoming transfers, "
            f"checking {len(senders)} sender(s) {senders}",
        )
        if not senders:
            result = TraceResult.negative(depth)
            self._remember(address, depth, max_depth, result)
            return _Entered(result=result)
        return _Entered(frame=_Frame(address=address, depth=depth, senders=senders))

    async def _fetch_incoming(self, address: str) -> list[TransferRecord]:
        collected: list[TransferRecord] = []
        page_key: Optional[str] = None
        for _ in range(self._max_pages):
            self._metrics.transfer_fetches += 1
            transfers, page_key = await self._index.get_incoming_transfers(
                address,
                self._settings.token_address,
                page_key=page_key,
                max_count=self._page_size,
            )
            if not transfers:
                break
            collected.extend(transfers)
            if not page_key:
                break
        return collected

    def _absorb(
        self, address: str, depth: int, stage: str, exc: Exception, step_log: _StepLog
    ) -> _Entered:
        self._metrics.record_absorbed_error(
            chain=self.chain, address=address, depth=depth, stage=stage, error=exc
        )
        step_log.add(depth, f"{address}: {stage} failed ({type(exc).__name__}: {exc}); treated as no evidence")
        return _Entered(result=TraceResult.negative(depth), tainted=True)

    def _memo_key(self, address: str, depth: int, max_depth: int) -> str:
        return f"{self.chain}:{address}:{depth}:{max_depth}"

    def _remember(self, address: str, depth: int, max_depth: int, result: TraceResult) -> None:
        if self._memo is not None:
            self._memo.set(self._memo_key(address, depth, max_depth), result.model_copy(deep=True))


# ---------------------------------------------------------------------------
# Convenience wrapper over the shared clients
# ---------------------------------------------------------------------------

def build_tracer(
    chain: str,
    *,
    use_memo: bool = True,
    max_pages: int = TRACE_MAX_PAGES,
) -> FundingTracer:
    """A tracer wired to the shared index client, registry and memo."""
    return FundingTracer(
        get_index_client(chain),
        MinerRegistry(get_store(), chain),
        get_chain_settings(chain),
        memo=get_trace_memo() if use_memo else None,
        max_pages=max_pages,
    )


async def trace_funding(
    address: str,
    chain: str,
    *,
    depth: int = 0,
    max_depth: int = TRACE_MAX_DEPTH,
    visited: Optional[set[str]] = None,
    logs: Optional[list[str]] = None,
    use_memo: bool = True,
    max_pages: int = TRACE_MAX_PAGES,
) -> TraceResult:
    """Trace *address* on *chain* using the shared clients."""
    tracer = build_tracer(chain, use_memo=use_memo, max_pages=max_pages)
    return await tracer.trace(
        address, depth=depth, max_depth=max_depth, visited=visited, logs=logs
    )

