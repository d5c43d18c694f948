"""
Singleton client management for Miner Watch.

Provides lazy-initialised per-chain Alchemy clients and StorageCore
readers, plus the shared store, the persistent trace-result cache and the
in-memory trace memo.

``init_clients`` / ``close_clients`` should be called at app startup/shutdown.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..cache import SQLiteCache, TTLCache
from ..circuit_breaker import CircuitBreaker, register
from ..data_sources.alchemy import AlchemyClient
from ..data_sources.contracts import GameContractReader
from ..errors import IndexProviderError
from ..store import SQLiteStore
from config import (
    CACHE_SQLITE_PATH,
    CB_FAILURE_THRESHOLD,
    CB_RECOVERY_TIMEOUT,
    DATABASE_PATH,
    REQUEST_TIMEOUT,
    SUPPORTED_CHAINS,
    TRACE_MEMO_MAX_ENTRIES,
    TRACE_MEMO_TTL_SECONDS,
    TRACE_RESULT_TTL_SECONDS,
    get_chain_settings,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level singletons (created once, reused)
# ---------------------------------------------------------------------------
_index_clients: dict[str, AlchemyClient] = {}
_contract_readers: dict[str, GameContractReader] = {}
_store: Optional[SQLiteStore] = None

result_cache = SQLiteCache(db_path=CACHE_SQLITE_PATH, default_ttl=TRACE_RESULT_TTL_SECONDS)
trace_memo = TTLCache(default_ttl=TRACE_MEMO_TTL_SECONDS, max_entries=TRACE_MEMO_MAX_ENTRIES)

# Circuit breakers – one per chain endpoint, registered for health reporting
_breakers: dict[str, CircuitBreaker] = {
    chain: register(
        CircuitBreaker(
            f"alchemy:{chain}",
            failure_threshold=CB_FAILURE_THRESHOLD,
            recovery_timeout=CB_RECOVERY_TIMEOUT,
            trip_on=(IndexProviderError,),
        )
    )
    for chain in SUPPORTED_CHAINS
}


def get_index_client(chain: str) -> AlchemyClient:
    client = _index_clients.get(chain)
    if client is None:
        settings = get_chain_settings(chain)
        if not settings.rpc_url:
            logger.warning("No RPC URL configured for %s – index calls will fail", chain)
        client = AlchemyClient(
            settings.rpc_url,
            chain=chain,
            timeout=REQUEST_TIMEOUT,
            circuit_breaker=_breakers[chain],
        )
        _index_clients[chain] = client
    return client


def get_contract_reader(chain: str) -> GameContractReader:
    reader = _contract_readers.get(chain)
    if reader is None:
        settings = get_chain_settings(chain)
        reader = GameContractReader(
            settings.rpc_url,
            settings.storage_contract,
            chain=chain,
            timeout=REQUEST_TIMEOUT,
        )
        _contract_readers[chain] = reader
    return reader


def get_store() -> SQLiteStore:
    global _store
    if _store is None:
        _store = SQLiteStore(DATABASE_PATH)
    return _store


def get_result_cache() -> SQLiteCache:
    return result_cache


def get_trace_memo() -> TTLCache:
    return trace_memo


async def init_clients() -> None:
    """Eagerly create the per-chain clients (called at startup)."""
    for chain in SUPPORTED_CHAINS:
        get_index_client(chain)
        get_contract_reader(chain)
    get_store()


async def close_clients() -> None:
    """Close clients and connections gracefully (called at shutdown)."""
    global _store
    for client in _index_clients.values():
        await client.close()
    _index_clients.clear()
    for reader in _contract_readers.values():
        await reader.close()
    _contract_readers.clear()
    if _store is not None:
        await _store.close()
        _store = None
    await result_cache.close()
