"""
Project configuration file for the Miner Watch service.

This module centralises all user-modifiable settings such as API keys,
RPC endpoints, per-chain contract addresses, trace budgets and scanner
pacing.  You can edit these values directly or set environment variables
to override them.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def _parse_float(name: str, default: str, *, low: float = 0.0, high: float = 1.0) -> float:
    """Parse an env var as a float and validate it within [low, high]."""
    raw = os.getenv(name, default)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        logger.error("Invalid value for %s: %r – using default %s", name, raw, default)
        value = float(default)
    if not (low <= value <= high):
        logger.warning("%s=%.4f is outside [%.1f, %.1f] – clamped", name, value, low, high)
        value = max(low, min(value, high))
    return value


def _parse_int(name: str, default: str, *, minimum: int = 1) -> int:
    """Parse an env var as an int and enforce a minimum."""
    raw = os.getenv(name, default)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        logger.error("Invalid value for %s: %r – using default %s", name, raw, default)
        value = int(default)
    if value < minimum:
        logger.warning("%s=%d is below minimum %d – clamped", name, value, minimum)
        value = minimum
    return value


def _parse_address_list(name: str, default: tuple[str, ...]) -> frozenset[str]:
    """Parse a comma-separated address list, lower-cased."""
    raw = os.getenv(name)
    if raw is None:
        return frozenset(a.lower() for a in default)
    return frozenset(a.strip().lower() for a in raw.split(",") if a.strip())


def _parse_symbol_list(name: str, default: str) -> frozenset[str]:
    raw = os.getenv(name, default)
    return frozenset(s.strip().upper() for s in raw.split(",") if s.strip())


# ---------------------------------------------------------------------------
# Chains
# ---------------------------------------------------------------------------
SUPPORTED_CHAINS: tuple[str, ...] = ("abstract", "base")

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_CHAIN_SUFFIX: dict[str, str] = {"abstract": "ABS", "base": "BASE"}

_ALCHEMY_URL_TEMPLATES: dict[str, str] = {
    "abstract": "https://abstract-mainnet.g.alchemy.com/v2/{key}",
    "base": "https://base-mainnet.g.alchemy.com/v2/{key}",
}

# Swap routers / aggregators whose "from" is never a human funder.
DEFAULT_ROUTER_DENYLIST: tuple[str, ...] = (
    "0x3fc91a3afd70395cd496c647d5a6cc9d4b2b7fad",  # Uniswap Universal Router
    "0x1111111254eeb25477b68fb85ed929f73a960582",  # 1inch v5
    "0xdef1c0ded9bec7f1a1670819833240f027b25eff",  # 0x Exchange Proxy
    "0x6e4141d33021b52c91c28608403db4a0ffb50ec6",
    "0x9cd09ec4d9d598e699c805c1b07a54fd25c1b5e2",
    "0x00000000009726632680fb29d3f7a9734e3010e2",
    "0x6160006c4aa63ad1cb8cc075d99127f9d8948bb5",
)

_DEFAULT_PROCEEDS_ASSETS: dict[str, str] = {
    "abstract": "ETH,WETH",
    "base": "ETH,WETH,VIRTUAL",
}

_DEFAULT_PROCEEDS_SYMBOL: dict[str, str] = {"abstract": "ETH", "base": "VIRTUAL"}


@dataclass(frozen=True)
class ChainSettings:
    """Per-chain addresses and knobs used by the scanners and the tracer."""

    name: str
    rpc_url: str
    token_address: str
    token_symbol: str
    lp_address: str
    refinement_address: str
    staking_address: Optional[str]
    storage_contract: str
    router_denylist: frozenset[str]
    proceeds_assets: frozenset[str]
    proceeds_symbol: str
    lp_scan_start_block: int

    @property
    def excluded_senders(self) -> frozenset[str]:
        """Every ``from`` address that never counts as a funding source."""
        fixed = {
            ZERO_ADDRESS,
            self.lp_address.lower(),
            self.refinement_address.lower(),
        }
        if self.staking_address:
            fixed.add(self.staking_address.lower())
        fixed.discard("")
        return frozenset(fixed) | self.router_denylist


def _load_chain(chain: str) -> ChainSettings:
    sfx = _CHAIN_SUFFIX[chain]
    api_key = os.getenv(f"ALCHEMY_API_KEY_{sfx}", "")
    rpc_url = os.getenv(f"RPC_URL_{sfx}", "") or (
        _ALCHEMY_URL_TEMPLATES[chain].format(key=api_key) if api_key else ""
    )
    return ChainSettings(
        name=chain,
        rpc_url=rpc_url,
        token_address=os.getenv(f"TOKEN_ADDRESS_{sfx}", "").lower(),
        token_symbol=os.getenv(f"TOKEN_SYMBOL_{sfx}", "VDNT"),
        lp_address=os.getenv(f"LP_ADDRESS_{sfx}", "").lower(),
        refinement_address=os.getenv(f"REFINEMENT_ADDRESS_{sfx}", "").lower(),
        staking_address=(os.getenv(f"STAKING_ADDRESS_{sfx}", "").lower() or None),
        storage_contract=os.getenv(f"STORAGE_CONTRACT_{sfx}", ""),
        router_denylist=_parse_address_list(
            f"ROUTER_DENYLIST_{sfx}", DEFAULT_ROUTER_DENYLIST
        ),
        proceeds_assets=_parse_symbol_list(
            f"PROCEEDS_ASSETS_{sfx}", _DEFAULT_PROCEEDS_ASSETS[chain]
        ),
        proceeds_symbol=os.getenv(
            f"PROCEEDS_SYMBOL_{sfx}", _DEFAULT_PROCEEDS_SYMBOL[chain]
        ),
        lp_scan_start_block=_parse_int(f"LP_SCAN_START_BLOCK_{sfx}", "0", minimum=0),
    )


CHAINS: dict[str, ChainSettings] = {c: _load_chain(c) for c in SUPPORTED_CHAINS}


def get_chain_settings(chain: str) -> ChainSettings:
    """Return the settings for *chain* or raise ``ValueError``."""
    try:
        return CHAINS[chain]
    except KeyError:
        raise ValueError(
            f"Unsupported chain {chain!r} (expected one of {', '.join(SUPPORTED_CHAINS)})"
        ) from None


# ---------------------------------------------------------------------------
# Funding trace
# ---------------------------------------------------------------------------
TRACE_MAX_DEPTH: int = _parse_int("TRACE_MAX_DEPTH", "10", minimum=0)
TRACE_BRANCH_LIMIT: int = _parse_int("TRACE_BRANCH_LIMIT", "5", minimum=1)
TRACE_MAX_PAGES: int = _parse_int("TRACE_MAX_PAGES", "3", minimum=1)
TRACE_RECHECK_MAX_PAGES: int = _parse_int("TRACE_RECHECK_MAX_PAGES", "5", minimum=1)
TRACE_PAGE_SIZE: int = _parse_int("TRACE_PAGE_SIZE", "1000", minimum=1)
TRACE_MEMO_TTL_SECONDS: int = _parse_int("TRACE_MEMO_TTL_SECONDS", "900", minimum=1)
TRACE_MEMO_MAX_ENTRIES: int = _parse_int("TRACE_MEMO_MAX_ENTRIES", "20000", minimum=1)
TRACE_RESULT_TTL_SECONDS: int = _parse_int("TRACE_RESULT_TTL_SECONDS", "21600", minimum=1)

# ---------------------------------------------------------------------------
# Scanners
# ---------------------------------------------------------------------------
SELL_SCAN_BATCH_SIZE: int = _parse_int("SELL_SCAN_BATCH_SIZE", "20", minimum=1)
SELL_SCAN_BATCH_DELAY: float = _parse_float("SELL_SCAN_BATCH_DELAY", "0.5", high=30.0)
SELL_SCAN_BLOCK_RANGE: int = _parse_int("SELL_SCAN_BLOCK_RANGE", "50000", minimum=1)
TRANSFER_PAGE_SIZE: int = _parse_int("TRANSFER_PAGE_SIZE", "100", minimum=1)
TRANSFER_MAX_PAGES: int = _parse_int("TRANSFER_MAX_PAGES", "100", minimum=1)
TRANSFER_PAGE_DELAY: float = _parse_float("TRANSFER_PAGE_DELAY", "0.1", high=10.0)
MINER_SCAN_BATCH_SIZE: int = _parse_int("MINER_SCAN_BATCH_SIZE", "50", minimum=1)
MINER_SCAN_BATCH_DELAY: float = _parse_float("MINER_SCAN_BATCH_DELAY", "0.2", high=10.0)
LP_PAGE_SIZE: int = _parse_int("LP_PAGE_SIZE", "50", minimum=1)

# ---------------------------------------------------------------------------
# Store / cache
# ---------------------------------------------------------------------------
DATABASE_PATH: str = os.getenv("DATABASE_PATH", "data/miner_watch.db")
CACHE_SQLITE_PATH: str = os.getenv("CACHE_SQLITE_PATH", "data/cache.db")

# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------
REQUEST_TIMEOUT: int = _parse_int("REQUEST_TIMEOUT", "15", minimum=1)
RECHECK_TIMEOUT_SECONDS: int = _parse_int("RECHECK_TIMEOUT_SECONDS", "120", minimum=5)
SCAN_TIMEOUT_SECONDS: int = _parse_int("SCAN_TIMEOUT_SECONDS", "280", minimum=5)

# ---------------------------------------------------------------------------
# Rate limiting (slowapi format, e.g. "10/minute")
# ---------------------------------------------------------------------------
RATE_LIMIT_READ: str = os.getenv("RATE_LIMIT_READ", "60/minute")
RATE_LIMIT_RECHECK: str = os.getenv("RATE_LIMIT_RECHECK", "10/minute")
RATE_LIMIT_SCAN: str = os.getenv("RATE_LIMIT_SCAN", "5/minute")

# ---------------------------------------------------------------------------
# Sentry (error tracking)
# ---------------------------------------------------------------------------
SENTRY_DSN: str = os.getenv("SENTRY_DSN", "")
SENTRY_ENVIRONMENT: str = os.getenv("SENTRY_ENVIRONMENT", "production")
SENTRY_TRACES_SAMPLE_RATE: float = _parse_float(
    "SENTRY_TRACES_SAMPLE_RATE", "0.1", low=0.0, high=1.0
)

# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------
CB_FAILURE_THRESHOLD: int = _parse_int("CB_FAILURE_THRESHOLD", "8", minimum=1)
CB_RECOVERY_TIMEOUT: float = float(os.getenv("CB_RECOVERY_TIMEOUT", "60"))

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT: str = os.getenv("LOG_FORMAT", "text")  # "text" or "json"

# ---------------------------------------------------------------------------
# API server
# ---------------------------------------------------------------------------
API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
API_PORT: int = _parse_int("API_PORT", "8000", minimum=1)
CORS_ORIGINS: list[str] = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if o.strip()
]
ADMIN_RESET_TOKEN: str = os.getenv("ADMIN_RESET_TOKEN", "")
