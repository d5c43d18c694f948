"""
Pydantic models used throughout Miner Watch.

API-facing models serialise with camelCase aliases (``isLinkedToMiner``,
``tracePath`` …) since the dashboard consumes them as-is; Python code
uses the snake_case attribute names.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .utils import hex_to_int, normalize_address, parse_datetime


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Transfer index records
# ---------------------------------------------------------------------------
class TransferRecord(BaseModel):
    """One row of ``alchemy_getAssetTransfers`` output, addresses lower-cased."""

    model_config = ConfigDict(frozen=True)

    from_address: str = Field("", description="Sender (lower-cased)")
    to_address: str = Field("", description="Recipient (lower-cased)")
    value: Optional[Decimal] = Field(None, description="Amount in token units")
    asset: str = Field("", description="Asset symbol reported by the index")
    category: str = Field("", description="erc20 / external / internal …")
    block_number: int = 0
    timestamp: Optional[datetime] = None
    tx_hash: str = ""
    contract_address: str = ""

    @classmethod
    def from_alchemy(cls, raw: dict[str, Any]) -> "TransferRecord":
        value = raw.get("value")
        try:
            amount = Decimal(str(value)) if value is not None else None
        except (InvalidOperation, ValueError):
            amount = None
        return cls(
            from_address=normalize_address(raw.get("from")),
            to_address=normalize_address(raw.get("to")),
            value=amount,
            asset=raw.get("asset") or "",
            category=raw.get("category") or "",
            block_number=hex_to_int(raw.get("blockNum")),
            timestamp=parse_datetime((raw.get("metadata") or {}).get("blockTimestamp")),
            tx_hash=normalize_address(raw.get("hash")),
            contract_address=normalize_address((raw.get("rawContract") or {}).get("address")),
        )


# ---------------------------------------------------------------------------
# Funding trace
# ---------------------------------------------------------------------------
class TraceResult(_CamelModel):
    """Outcome of one funding trace.

    ``trace_depth`` is the depth of the frame that reported the outcome: on
    a linked result it is where the successful edge was taken from, not how
    many hops away the miner sits.  ``trace_path`` runs from the queried
    address to ``miner_address``.
    """

    is_linked_to_miner: bool = False
    trace_depth: int = 0
    miner_address: Optional[str] = None
    trace_path: Optional[list[str]] = None

    @classmethod
    def negative(cls, depth: int) -> "TraceResult":
        return cls(is_linked_to_miner=False, trace_depth=depth)

    @classmethod
    def direct(cls, address: str, depth: int) -> "TraceResult":
        return cls(
            is_linked_to_miner=True,
            trace_depth=depth,
            miner_address=address,
            trace_path=[address],
        )


# ---------------------------------------------------------------------------
# LP sells
# ---------------------------------------------------------------------------
class SellTransaction(_CamelModel):
    """A token sell into the LP, with its miner-link outcome."""

    chain: str
    tx_hash: str
    seller_address: str
    token_amount: float = Field(0.0, description="Tokens sold into the pool")
    token_symbol: str = "VDNT"
    proceeds_amount: float = Field(0.0, description="ETH / VIRTUAL received")
    proceeds_symbol: str = "ETH"
    block_number: int = 0
    block_timestamp: Optional[datetime] = None
    transfer_count: int = 0
    is_direct_miner: bool = False
    is_indirect_miner: bool = False
    miner_address: Optional[str] = None
    trace_depth: Optional[int] = None
    trace_path: Optional[list[str]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    blocks_ago: Optional[int] = Field(None, description="Chain head minus block_number")

    def apply_trace(self, result: TraceResult) -> None:
        """Copy an indirect-trace outcome onto this row."""
        self.is_direct_miner = False
        self.is_indirect_miner = result.is_linked_to_miner
        self.miner_address = result.miner_address if result.is_linked_to_miner else None
        self.trace_depth = result.trace_depth
        self.trace_path = result.trace_path if result.is_linked_to_miner else None

    def mark_direct(self) -> None:
        self.is_direct_miner = True
        self.is_indirect_miner = False
        self.miner_address = self.seller_address
        self.trace_depth = 0
        self.trace_path = [self.seller_address]


class ScanProgress(_CamelModel):
    chain: str
    last_scanned_block: int = 0
    total_transactions: int = 0
    last_updated_at: Optional[datetime] = None


class BlockRange(_CamelModel):
    start_block: int
    end_block: int


class SellScanReport(_CamelModel):
    """Summary of one ``scan_range`` run."""

    chain: str
    start_block: int
    end_block: int
    sells_found: int = 0
    direct_miners: int = 0
    indirect_miners: int = 0
    persisted: int = 0
    failed_batches: int = 0


class LpTransactionsResponse(_CamelModel):
    chain: str
    latest_block: Optional[int] = None
    transactions: list[SellTransaction] = Field(default_factory=list)
    total: int = 0
    offset: int = 0
    limit: int = 50
    has_more: bool = False
    scan_progress: ScanProgress
    next_range: Optional[BlockRange] = None
    processed: Optional[SellScanReport] = None


class SellOwnershipStats(_CamelModel):
    chain: str
    total_sells: int = 0
    direct_miner_sells: int = 0
    indirect_miner_sells: int = 0
    non_miner_sells: int = 0
    total_token_sold: float = 0.0
    miner_token_sold: float = 0.0
    miner_linked_share: float = Field(
        0.0, ge=0.0, le=1.0, description="Share of sells made by direct or indirect miners"
    )


# ---------------------------------------------------------------------------
# Recheck
# ---------------------------------------------------------------------------
class RecheckRequest(_CamelModel):
    tx_hash: str = ""
    chain: str = ""


class MinerStatus(_CamelModel):
    """Recheck outcome for one sell, with the step log of the trace."""

    is_miner: bool = False
    is_indirect_miner: bool = False
    miner_connection: Optional[str] = None
    trace_depth: int = 0
    trace_path: Optional[list[str]] = None
    logs: list[str] = Field(default_factory=list)


class RecheckResponse(_CamelModel):
    success: bool = True
    tx_hash: str
    chain: str
    miner_status: MinerStatus
    timestamp: datetime


# ---------------------------------------------------------------------------
# Miner registry scan
# ---------------------------------------------------------------------------
class MinerScanRequest(_CamelModel):
    chain: str = ""
    max_miners: int = Field(100, ge=1, le=10_000)


class MinerScanResult(_CamelModel):
    chain: str
    addresses: list[str] = Field(default_factory=list)
    last_checked_id: int = 0
    total_scanned: int = 0
    has_more: bool = False
    total_miners_in_contract: int = 0
    new_addresses: int = 0


# ---------------------------------------------------------------------------
# Withdrawal ratios
# ---------------------------------------------------------------------------
class AddressMetrics(_CamelModel):
    """Deposits vs withdrawals for one miner owner (amounts in ether)."""

    address: str
    chain: str
    total_deposits: float = 0.0
    total_withdrawals: float = 0.0
    ratio: float = 0.0
    total_miners: int = 0
    active_miners: int = 0
    last_calculated_at: Optional[datetime] = None


class AddressMetricsRequest(_CamelModel):
    address: str = ""
    chain: str = "abstract"


class RatioRefreshRequest(_CamelModel):
    chain: str = ""
    limit: int = Field(50, ge=1, le=500)


class RatioRefreshResult(_CamelModel):
    chain: str
    refreshed: int = 0


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------
class ClearDataRequest(_CamelModel):
    chain: str = ""
    confirm: str = ""
    token: str = ""
