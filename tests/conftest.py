"""Shared test fixtures for the Miner Watch test suite."""

from __future__ import annotations

import sys
import os

# Ensure src/ is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from config import ZERO_ADDRESS, ChainSettings
from miner_watch.models import TransferRecord
from miner_watch.store import SQLiteStore

TOKEN = "0x" + "70" * 20
LP = "0x" + "11" * 20
REFINEMENT = "0x" + "22" * 20
STAKING = "0x" + "33" * 20
ROUTER = "0x" + "44" * 20


def addr(n: int) -> str:
    """Deterministic 20-byte address for test wallets."""
    return "0x" + f"{n:040x}"


def tx(n: int) -> str:
    return "0x" + f"{n:064x}"


def transfer(
    sender: str,
    recipient: str,
    *,
    value: str = "1",
    asset: str = "VDNT",
    category: str = "erc20",
    block: int = 100,
    tx_hash: str = "",
) -> TransferRecord:
    return TransferRecord(
        from_address=sender.lower(),
        to_address=recipient.lower(),
        value=Decimal(value),
        asset=asset,
        category=category,
        block_number=block,
        timestamp=datetime(2025, 1, 1, tzinfo=timezone.utc),
        tx_hash=tx_hash or tx(block),
        contract_address=TOKEN if category == "erc20" else "",
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def chain_settings() -> ChainSettings:
    """Abstract-like settings with every exclusion kind populated."""
    return ChainSettings(
        name="abstract",
        rpc_url="https://rpc.test",
        token_address=TOKEN,
        token_symbol="VDNT",
        lp_address=LP,
        refinement_address=REFINEMENT,
        staking_address=STAKING,
        storage_contract="0x" + "55" * 20,
        router_denylist=frozenset({ROUTER}),
        proceeds_assets=frozenset({"ETH", "WETH"}),
        proceeds_symbol="ETH",
        lp_scan_start_block=0,
    )


@pytest.fixture
def excluded_senders(chain_settings):
    return {
        "zero": ZERO_ADDRESS,
        "lp": LP,
        "refinement": REFINEMENT,
        "staking": STAKING,
        "router": ROUTER,
    }


@pytest.fixture
async def store(tmp_path):
    s = SQLiteStore(str(tmp_path / "miner_watch.db"))
    yield s
    await s.close()


@pytest.fixture
def now_utc():
    return datetime.now(tz=timezone.utc)
