"""
Alchemy JSON-RPC client (transfer index) for one chain.

Wraps ``alchemy_getAssetTransfers`` plus the two plain node calls the sell
scanner needs (``eth_blockNumber`` and ``eth_getTransactionByHash``).
Uses ``httpx`` with the shared retry helper and the chain's circuit
breaker.  Failures raise ``IndexProviderError``; callers decide whether
to absorb them.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional

import httpx

from ._retry import async_http_post_json
from ..circuit_breaker import CircuitBreaker, CircuitOpenError
from ..constants import CATEGORY_ERC20
from ..errors import IndexProviderError
from ..models import TransferRecord
from ..utils import hex_to_int, int_to_hex, normalize_address

logger = logging.getLogger(__name__)

# Retry configuration
_MAX_RETRIES = 3
_BACKOFF_BASE = 1.5  # seconds


class AlchemyClient:
    """Async Alchemy client bound to one chain endpoint."""

    def __init__(
        self,
        endpoint: str,
        *,
        chain: str,
        timeout: int = 15,
        circuit_breaker: CircuitBreaker | None = None,
    ) -> None:
        self._endpoint = endpoint.rstrip("/")
        self.chain = chain
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None
        self._id_counter = 0
        self._cb = circuit_breaker

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def get_asset_transfers(
        self, params: dict[str, Any]
    ) -> tuple[list[TransferRecord], Optional[str]]:
        """One page of ``alchemy_getAssetTransfers``: ``(transfers, page_key)``."""
        result = await self._call("alchemy_getAssetTransfers", [params])
        if not isinstance(result, dict):
            raise IndexProviderError("alchemy_getAssetTransfers", "malformed result")
        transfers = [
            TransferRecord.from_alchemy(t) for t in result.get("transfers") or []
        ]
        return transfers, result.get("pageKey") or None

    async def get_incoming_transfers(
        self,
        address: str,
        token_contract: str,
        *,
        page_key: Optional[str] = None,
        max_count: int = 1000,
    ) -> tuple[list[TransferRecord], Optional[str]]:
        """Token transfers *to* ``address``, newest first."""
        params: dict[str, Any] = {
            "toAddress": normalize_address(address),
            "category": [CATEGORY_ERC20],
            "contractAddresses": [token_contract],
            "maxCount": int_to_hex(max_count),
            "order": "desc",
        }
        if page_key:
            params["pageKey"] = page_key
        return await self.get_asset_transfers(params)

    async def iter_transfers(
        self,
        params: dict[str, Any],
        *,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
        page_size: int = 100,
        max_pages: int = 100,
        max_results: int = 10_000,
        page_delay: float = 0.1,
    ) -> AsyncIterator[TransferRecord]:
        """Walk every page of a (block-bounded) transfer query.

        Stops on an empty page, a missing ``pageKey``, *max_pages* or
        *max_results*.  Sleeps *page_delay* between pages.
        """
        query = dict(params, maxCount=int_to_hex(page_size))
        if from_block:
            query["fromBlock"] = int_to_hex(from_block)
        if to_block:
            query["toBlock"] = int_to_hex(to_block)

        emitted = 0
        pages = 0
        while pages < max_pages:
            transfers, page_key = await self.get_asset_transfers(query)
            pages += 1
            if not transfers:
                break
            for t in transfers:
                yield t
            emitted += len(transfers)
            if not page_key or emitted >= max_results:
                break
            query["pageKey"] = page_key
            if page_delay:
                await asyncio.sleep(page_delay)
        logger.debug("[alchemy:%s] fetched %d transfers in %d page(s)", self.chain, emitted, pages)

    # ------------------------------------------------------------------
    # Node calls
    # ------------------------------------------------------------------

    async def get_block_number(self) -> int:
        result = await self._call("eth_blockNumber", [])
        block = hex_to_int(result, default=-1)
        if block < 0:
            raise IndexProviderError("eth_blockNumber", f"unexpected result {result!r}")
        return block

    async def get_transaction_sender(self, tx_hash: str) -> Optional[str]:
        """``from`` of a transaction, or ``None`` when the node does not know it."""
        result = await self._call("eth_getTransactionByHash", [tx_hash], allow_empty=True)
        if isinstance(result, dict) and result.get("from"):
            return normalize_address(result["from"])
        return None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _call(
        self, method: str, params: list[Any], *, allow_empty: bool = False
    ) -> Any:
        if not self._endpoint:
            raise IndexProviderError(method, f"no RPC endpoint configured for {self.chain}")

        self._id_counter += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._id_counter,
            "method": method,
            "params": params,
        }

        async def _do() -> Any:
            client = await self._get_client()
            result = await async_http_post_json(
                client,
                self._endpoint,
                json_payload=payload,
                max_retries=_MAX_RETRIES,
                backoff_base=_BACKOFF_BASE,
                label=f"alchemy:{self.chain} {method}",
            )
            if result is None and not allow_empty:
                raise IndexProviderError(method)
            return result

        if self._cb is None:
            return await _do()
        try:
            return await self._cb.call(_do)
        except CircuitOpenError as exc:
            raise IndexProviderError(method, str(exc)) from exc
