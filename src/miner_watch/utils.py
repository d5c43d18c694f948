"""
Shared utilities for Miner Watch.

- ``parse_datetime``: unified datetime parsing for index timestamps
- ``normalize_address`` / ``is_tx_hash``: hex string helpers
- ``hex_to_int`` / ``int_to_hex``: JSON-RPC quantity conversion
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional

_TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


# ---------------------------------------------------------------------------
# Unified datetime parser
# ---------------------------------------------------------------------------

def parse_datetime(value: object) -> Optional[datetime]:
    """Convert a value to a timezone-aware ``datetime`` (UTC).

    Accepted inputs:

    - ``None`` → ``None``
    - ``datetime`` → pass-through, with ``tzinfo`` set to UTC if naïve
    - ``str`` → ISO-format (Alchemy emits ``"2024-05-01T12:00:00.000Z"``)
    - ``int`` / ``float`` → Unix epoch timestamp in seconds
    - Anything else → ``None``
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    if isinstance(value, str):
        try:
            cleaned = value.replace("Z", "+00:00") if value.endswith("Z") else value
            dt = datetime.fromisoformat(cleaned)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt
        except (ValueError, TypeError):
            return None

    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (ValueError, OSError, OverflowError):
            return None

    return None


# ---------------------------------------------------------------------------
# Hex helpers
# ---------------------------------------------------------------------------

def normalize_address(value: Optional[str]) -> str:
    """Lower-case and strip an address; ``None`` becomes ``""``."""
    return (value or "").strip().lower()


def is_tx_hash(value: Optional[str]) -> bool:
    return bool(value) and bool(_TX_HASH_RE.match(value))  # type: ignore[arg-type]


def hex_to_int(value: object, default: int = 0) -> int:
    """Parse a JSON-RPC quantity (``"0x1a"``) or plain int."""
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16) if value.startswith("0x") else int(value)
        except ValueError:
            return default
    return default


def int_to_hex(value: int) -> str:
    return hex(value)
