"""
Miner Watch package initializer.

This package exposes the primary function ``trace_funding`` for external
usage.  Other internal modules (e.g. scanners, API) should be imported
explicitly from their respective files.
"""

from .funding_trace import trace_funding  # noqa: F401

__all__ = ["trace_funding"]
