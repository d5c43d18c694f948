"""
REST API for Miner Watch using FastAPI.

Endpoints
---------
GET  /health                      - Health check
GET  /lp-transactions             - Stored LP sells (optionally scans the next block range)
GET  /lp-transactions/all-hashes  - Every stored sell hash for a chain
POST /lp-transactions/recheck     - Re-trace one sell and overwrite its outcome
GET  /lp-transactions/stats       - Sells by direct / indirect / non-miners
POST /miners/scan                 - Extend the Miner Registry from StorageCore
POST /address-metrics             - Live deposits, withdrawals and ratio for one address
GET  /ratios                      - Cached withdrawal ratios, highest first
POST /ratios/refresh              - Compute missing withdrawal ratios
POST /admin/clear                 - Delete every stored row for a chain

Security features:
- Rate limiting via slowapi (per-IP)
- Chain / address / transaction-hash validation
- Internal error details hidden from clients
- Graceful startup/shutdown of HTTP clients and the store
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import sentry_sdk
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware
from web3 import Web3

from config import (
    ADMIN_RESET_TOKEN,
    API_HOST,
    API_PORT,
    CORS_ORIGINS,
    LP_PAGE_SIZE,
    RATE_LIMIT_READ,
    RATE_LIMIT_RECHECK,
    RATE_LIMIT_SCAN,
    RECHECK_TIMEOUT_SECONDS,
    SCAN_TIMEOUT_SECONDS,
    SELL_SCAN_BLOCK_RANGE,
    SENTRY_DSN,
    SENTRY_ENVIRONMENT,
    SENTRY_TRACES_SAMPLE_RATE,
    SUPPORTED_CHAINS,
    get_chain_settings,
)
from .circuit_breaker import get_all_statuses as cb_statuses
from .data_sources._clients import (
    close_clients,
    get_index_client,
    get_result_cache,
    get_store,
    get_trace_memo,
    init_clients,
)
from .errors import ContractCallError, IndexProviderError
from .logging_config import generate_request_id, request_id_ctx, setup_logging
from .metrics import TRACE_METRICS
from .miner_registry import scan_miner_owners
from .models import (
    AddressMetrics,
    AddressMetricsRequest,
    ClearDataRequest,
    LpTransactionsResponse,
    MinerScanRequest,
    MinerScanResult,
    RatioRefreshRequest,
    RatioRefreshResult,
    RecheckRequest,
    RecheckResponse,
    SellOwnershipStats,
)
from .ratio_service import address_metrics, refresh_ratios, sell_ownership_stats
from .recheck import recheck_transaction
from .sell_scanner import process_next_range
from .utils import is_tx_hash, normalize_address

# Initialise structured logging early
setup_logging()
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Sentry – initialise before anything else so startup errors are captured
# ---------------------------------------------------------------------------
if SENTRY_DSN:
    sentry_sdk.init(
        dsn=SENTRY_DSN,
        environment=SENTRY_ENVIRONMENT,
        traces_sample_rate=SENTRY_TRACES_SAMPLE_RATE,
        send_default_pii=False,
        # Don't capture 4xx client errors as Sentry events
        before_send=lambda event, hint: (
            None
            if (hint.get("exc_info") and
                isinstance(hint["exc_info"][1], HTTPException) and
                (hint["exc_info"][1].status_code or 500) < 500)
            else event
        ),
    )
    logger.info("Sentry initialised (env=%s)", SENTRY_ENVIRONMENT)
else:
    logger.info("SENTRY_DSN not set – error tracking disabled")

_start_time = time.monotonic()

_CLEAR_CONFIRMATION = "DELETE_ALL_DATA"


def _require_chain(chain: str) -> str:
    chain = (chain or "").strip().lower()
    if chain not in SUPPORTED_CHAINS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid chain. Expected one of: {', '.join(SUPPORTED_CHAINS)}",
        )
    return chain


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------
limiter = Limiter(key_func=get_remote_address)


# ---------------------------------------------------------------------------
# Lifespan: startup / shutdown
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Initialise shared clients on startup, close on shutdown."""
    for chain in SUPPORTED_CHAINS:
        settings = get_chain_settings(chain)
        if not settings.rpc_url:
            logger.error("No RPC URL for %s – set ALCHEMY_API_KEY_%s or RPC_URL_%s",
                         chain, chain.upper(), chain.upper())
        if not settings.lp_address:
            logger.warning("LP_ADDRESS not set for %s – sell scanning disabled", chain)
    logger.info("Starting up – initialising clients …")
    await init_clients()
    yield
    logger.info("Shutting down – closing clients …")
    await close_clients()


app = FastAPI(
    title="Miner Watch API",
    description="Track LP sells on Abstract and Base and link sellers to miner-owning wallets.",
    version="1.0.0",
    lifespan=lifespan,
)

# Attach rate-limiter state
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Accept"],
)


# ---------------------------------------------------------------------------
# Request-ID & access-log middleware
# ---------------------------------------------------------------------------
class RequestIdMiddleware(BaseHTTPMiddleware):
    """Attach a unique request ID to every request for tracing."""

    async def dispatch(self, request: Request, call_next):
        rid = generate_request_id()
        request_id_ctx.set(rid)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = rid
        logger.info(
            "%s %s -> %s (%.1f ms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response


app.add_middleware(RequestIdMiddleware)


# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------


@app.get("/", tags=["system"], include_in_schema=False)
async def root():
    """Redirect to Swagger UI."""
    return RedirectResponse(url="/docs")


@app.get("/health", tags=["system"])
async def health() -> dict:
    """Health check including uptime, circuit breaker states and trace counters."""
    return {
        "status": "ok",
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "chains": list(SUPPORTED_CHAINS),
        "trace_memo": get_trace_memo().stats(),
        "trace_metrics": TRACE_METRICS.snapshot(),
        "circuit_breakers": cb_statuses(),
    }


# ------------------------------------------------------------------
# LP sells
# ------------------------------------------------------------------

async def _latest_block(chain: str) -> Optional[int]:
    try:
        return await get_index_client(chain).get_block_number()
    except IndexProviderError as exc:
        logger.warning("Latest block unavailable for %s: %s", chain, exc)
        return None


async def _load_lp_transactions(chain: str, offset: int, process_next: bool) -> LpTransactionsResponse:
    store = get_store()
    progress = await store.get_lp_scan_progress(chain)

    processed = None
    if process_next or progress.last_scanned_block == 0:
        processed = await process_next_range(chain)
        progress = await store.get_lp_scan_progress(chain)

    latest = await _latest_block(chain)
    transactions = await store.list_sell_transactions(chain, limit=LP_PAGE_SIZE, offset=offset)
    if latest is not None:
        for tx in transactions:
            tx.blocks_ago = max(latest - tx.block_number, 0)
    total = await store.count_sell_transactions(chain)
    next_range = await store.next_block_range(
        chain, SELL_SCAN_BLOCK_RANGE, get_chain_settings(chain).lp_scan_start_block
    )
    if latest is not None and next_range.start_block >= latest:
        next_range = None

    return LpTransactionsResponse(
        chain=chain,
        latest_block=latest,
        transactions=transactions,
        total=total,
        offset=offset,
        limit=LP_PAGE_SIZE,
        has_more=offset + len(transactions) < total,
        scan_progress=progress,
        next_range=next_range,
        processed=processed,
    )


@app.get("/lp-transactions", response_model=LpTransactionsResponse, tags=["sells"])
@limiter.limit(RATE_LIMIT_READ)
async def get_lp_transactions(
    request: Request,
    chain: str = Query("abstract", description="abstract or base"),
    offset: int = Query(0, ge=0, description="Number of rows to skip"),
    scan_next: bool = Query(
        False, alias="processNextRange", description="Scan the next block range first"
    ),
) -> LpTransactionsResponse:
    """Stored sells newest first, with scan progress.  Scans on first use."""
    chain = _require_chain(chain)
    try:
        return await asyncio.wait_for(
            _load_lp_transactions(chain, offset, scan_next),
            timeout=SCAN_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        raise HTTPException(
            status_code=504,
            detail=f"Block range scan timed out after {SCAN_TIMEOUT_SECONDS}s. "
                   "Progress was saved; try again to continue.",
        )
    except Exception as exc:
        logger.exception("Loading LP transactions failed for %s", chain)
        raise HTTPException(status_code=500, detail="Internal server error") from exc


@app.get("/lp-transactions/all-hashes", tags=["sells"])
@limiter.limit(RATE_LIMIT_READ)
async def get_all_hashes(
    request: Request,
    chain: str = Query("abstract", description="abstract or base"),
) -> dict:
    chain = _require_chain(chain)
    try:
        hashes = await get_store().all_sell_hashes(chain)
    except Exception as exc:
        logger.exception("Listing sell hashes failed for %s", chain)
        raise HTTPException(status_code=500, detail="Internal server error") from exc
    return {"chain": chain, "count": len(hashes), "hashes": hashes}


@app.post("/lp-transactions/recheck", response_model=RecheckResponse, tags=["sells"])
@limiter.limit(RATE_LIMIT_RECHECK)
async def recheck(request: Request, body: RecheckRequest) -> RecheckResponse:
    """Re-run the miner check and funding trace for one stored sell."""
    if not is_tx_hash(body.tx_hash):
        raise HTTPException(
            status_code=400,
            detail="Invalid transaction hash. Expected 0x followed by 64 hex characters.",
        )
    chain = _require_chain(body.chain)
    tx_hash = normalize_address(body.tx_hash)
    try:
        status = await asyncio.wait_for(
            recheck_transaction(chain, tx_hash), timeout=RECHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        raise HTTPException(
            status_code=504,
            detail=f"Recheck timed out after {RECHECK_TIMEOUT_SECONDS}s. Try again.",
        )
    except Exception as exc:
        logger.exception("Recheck failed for %s on %s", tx_hash, chain)
        raise HTTPException(status_code=500, detail="Internal server error") from exc

    if status is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return RecheckResponse(
        success=True,
        tx_hash=tx_hash,
        chain=chain,
        miner_status=status,
        timestamp=datetime.now(tz=timezone.utc),
    )


@app.get("/lp-transactions/stats", response_model=SellOwnershipStats, tags=["sells"])
@limiter.limit(RATE_LIMIT_READ)
async def get_sell_stats(
    request: Request,
    chain: str = Query("abstract", description="abstract or base"),
) -> SellOwnershipStats:
    chain = _require_chain(chain)
    try:
        return await sell_ownership_stats(chain)
    except Exception as exc:
        logger.exception("Sell stats failed for %s", chain)
        raise HTTPException(status_code=500, detail="Internal server error") from exc


# ------------------------------------------------------------------
# Miner registry
# ------------------------------------------------------------------

@app.post("/miners/scan", response_model=MinerScanResult, tags=["miners"])
@limiter.limit(RATE_LIMIT_SCAN)
async def scan_miners(request: Request, body: MinerScanRequest) -> MinerScanResult:
    """Read the next ``maxMiners`` miner ids and register their owners."""
    chain = _require_chain(body.chain)
    try:
        return await asyncio.wait_for(
            scan_miner_owners(chain, max_miners=body.max_miners),
            timeout=SCAN_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        raise HTTPException(
            status_code=504,
            detail=f"Miner scan timed out after {SCAN_TIMEOUT_SECONDS}s. Try a smaller maxMiners.",
        )
    except Exception as exc:
        logger.exception("Miner scan failed for %s", chain)
        raise HTTPException(status_code=500, detail="Internal server error") from exc


# ------------------------------------------------------------------
# Withdrawal ratios
# ------------------------------------------------------------------

@app.post("/address-metrics", response_model=AddressMetrics, tags=["ratios"])
@limiter.limit(RATE_LIMIT_READ)
async def get_address_metrics(request: Request, body: AddressMetricsRequest) -> AddressMetrics:
    """Read one address's deposits and withdrawals straight from StorageCore."""
    chain = _require_chain(body.chain)
    address = body.address.strip()
    if not Web3.is_address(address):
        raise HTTPException(status_code=400, detail="Invalid EVM address")
    try:
        return await asyncio.wait_for(
            address_metrics(chain, address), timeout=RECHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        raise HTTPException(
            status_code=504,
            detail=f"StorageCore read timed out after {RECHECK_TIMEOUT_SECONDS}s",
        )
    except ContractCallError as exc:
        logger.warning("Address metrics unavailable for %s on %s: %s", address, chain, exc)
        raise HTTPException(status_code=500, detail="Failed to read address metrics") from exc
    except Exception as exc:
        logger.exception("Address metrics failed for %s on %s", address, chain)
        raise HTTPException(status_code=500, detail="Internal server error") from exc


@app.get("/ratios", response_model=list[AddressMetrics], tags=["ratios"])
@limiter.limit(RATE_LIMIT_READ)
async def get_ratios(
    request: Request,
    chain: str = Query("abstract", description="abstract or base"),
    limit: int = Query(100, ge=1, le=500, description="Max rows to return"),
) -> list[AddressMetrics]:
    chain = _require_chain(chain)
    try:
        return await get_store().cached_ratios(chain, limit=limit)
    except Exception as exc:
        logger.exception("Loading ratios failed for %s", chain)
        raise HTTPException(status_code=500, detail="Internal server error") from exc


@app.post("/ratios/refresh", response_model=RatioRefreshResult, tags=["ratios"])
@limiter.limit(RATE_LIMIT_SCAN)
async def refresh_ratio_cache(request: Request, body: RatioRefreshRequest) -> RatioRefreshResult:
    chain = _require_chain(body.chain)
    try:
        refreshed = await asyncio.wait_for(
            refresh_ratios(chain, limit=body.limit), timeout=SCAN_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        raise HTTPException(
            status_code=504,
            detail=f"Ratio refresh timed out after {SCAN_TIMEOUT_SECONDS}s. Try a smaller limit.",
        )
    except Exception as exc:
        logger.exception("Ratio refresh failed for %s", chain)
        raise HTTPException(status_code=500, detail="Internal server error") from exc
    return RatioRefreshResult(chain=chain, refreshed=refreshed)


# ------------------------------------------------------------------
# Administrative reset
# ------------------------------------------------------------------

@app.post("/admin/clear", tags=["admin"])
@limiter.limit(RATE_LIMIT_SCAN)
async def clear_chain_data(request: Request, body: ClearDataRequest) -> dict:
    """Delete every stored row for one chain, including scan progress."""
    chain = _require_chain(body.chain)
    if body.confirm != _CLEAR_CONFIRMATION:
        raise HTTPException(
            status_code=400,
            detail=f'Confirmation required: set confirm to "{_CLEAR_CONFIRMATION}"',
        )
    if ADMIN_RESET_TOKEN and body.token != ADMIN_RESET_TOKEN:
        raise HTTPException(status_code=403, detail="Invalid admin token")
    try:
        deleted = await get_store().clear_chain(chain)
        await get_result_cache().invalidate_prefix(f"trace:{chain}:")
    except Exception as exc:
        logger.exception("Clearing data failed for %s", chain)
        raise HTTPException(status_code=500, detail="Internal server error") from exc
    get_trace_memo().clear()
    return {"success": True, "chain": chain, "deleted": deleted}


# ------------------------------------------------------------------
# Run with: python -m miner_watch.api
# ------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "miner_watch.api:app",
        host=API_HOST,
        port=API_PORT,
        reload=True,
    )
