"""
In-process counters for the funding tracer.

Absorbed node errors are part of normal operation (flaky index provider),
so they are counted here and logged as structured ``trace_error_absorbed``
events.  The health endpoint exposes ``TRACE_METRICS.snapshot()``.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class TraceMetrics:
    traces_started: int = 0
    traces_linked: int = 0
    nodes_visited: int = 0
    transfer_fetches: int = 0
    memo_hits: int = 0
    absorbed_errors: int = 0
    absorbed_by_stage: Counter = field(default_factory=Counter)
    absorbed_by_chain: Counter = field(default_factory=Counter)

    def record_absorbed_error(
        self,
        *,
        chain: str,
        address: str,
        depth: int,
        stage: str,
        error: BaseException,
    ) -> None:
        """Count one swallowed node failure and emit it as a structured event."""
        self.absorbed_errors += 1
        self.absorbed_by_stage[stage] += 1
        self.absorbed_by_chain[chain] += 1
        logger.warning(
            "[trace] %s failed at %s depth=%d (%s): %s – treated as no evidence",
            stage, address, depth, chain, error,
            extra={
                "event": "trace_error_absorbed",
                "chain": chain,
                "address": address,
                "depth": depth,
                "stage": stage,
                "error": f"{type(error).__name__}: {error}",
            },
        )

    def snapshot(self) -> dict[str, Any]:
        return {
            "traces_started": self.traces_started,
            "traces_linked": self.traces_linked,
            "nodes_visited": self.nodes_visited,
            "transfer_fetches": self.transfer_fetches,
            "memo_hits": self.memo_hits,
            "absorbed_errors": self.absorbed_errors,
            "absorbed_by_stage": dict(self.absorbed_by_stage),
            "absorbed_by_chain": dict(self.absorbed_by_chain),
        }


TRACE_METRICS = TraceMetrics()
