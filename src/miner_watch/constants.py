"""
Centralized constants for Miner Watch.

This file contains:
- EVM protocol constants (zero address, ether decimals)
- The StorageCore ABI subset read by the miner and ratio scanners
- Alchemy transfer categories used by the scanners

Per-chain addresses live in ``config`` since they are deployment settings.
"""

from __future__ import annotations

from config import ZERO_ADDRESS  # noqa: F401  (re-exported)

# ---------------------------------------------------------------------------
# EVM
# ---------------------------------------------------------------------------
ETHER_DECIMALS = 18

# Ratio reported when an address has withdrawn without ever depositing.
NO_DEPOSIT_RATIO = 999.0

# ---------------------------------------------------------------------------
# Alchemy transfer categories
# ---------------------------------------------------------------------------
CATEGORY_ERC20 = "erc20"
CATEGORY_EXTERNAL = "external"

# ---------------------------------------------------------------------------
# StorageCore (game state contract) – read-only subset
# ---------------------------------------------------------------------------
STORAGE_CORE_ABI = [
    {
        "inputs": [],
        "name": "nextMinerId",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "name": "miners",
        "outputs": [
            {
                "components": [
                    {"internalType": "address", "name": "owner", "type": "address"},
                    {"internalType": "uint8", "name": "minerType", "type": "uint8"},
                    {"internalType": "uint8", "name": "lives", "type": "uint8"},
                    {"internalType": "uint8", "name": "shields", "type": "uint8"},
                    {"internalType": "uint64", "name": "lastMaintenance", "type": "uint64"},
                    {"internalType": "uint64", "name": "lastReward", "type": "uint64"},
                    {"internalType": "uint64", "name": "gracePeriodEnd", "type": "uint64"},
                ],
                "internalType": "struct Miner",
                "name": "",
                "type": "tuple",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "", "type": "address"}],
        "name": "deposits",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "", "type": "address"}],
        "name": "withdrawals",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]
