"""
Exception hierarchy for Miner Watch.

The funding tracer absorbs every one of these at node level; the scanners
log and continue; the API maps anything that reaches it to a 500.
"""

from __future__ import annotations


class MinerWatchError(Exception):
    """Base class for all service errors."""


class IndexProviderError(MinerWatchError):
    """The transfer index (Alchemy JSON-RPC) failed or returned an error body."""

    def __init__(self, method: str, detail: str = "no result") -> None:
        super().__init__(f"{method} failed: {detail}")
        self.method = method


class ContractCallError(MinerWatchError):
    """A read-only call against the game contract failed."""


class StoreError(MinerWatchError):
    """A persistence operation on the relational store failed."""
