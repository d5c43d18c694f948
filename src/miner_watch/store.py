"""
Relational store for Miner Watch (SQLite via aiosqlite).

Tables
------
miner_addresses       the Miner Registry, partitioned by chain
scan_progress         miner-registry scanner position per chain
lp_sell_transactions  one row per (chain, tx_hash) with its trace outcome
lp_scan_progress      LP sell scanner position per chain
address_ratios        deposits / withdrawals per miner owner

Addresses and hashes are stored lower-cased.  Every write is a single-row
upsert so re-running a scan is idempotent.  Unlike ``SQLiteCache`` this
store does not swallow failures: they surface as ``StoreError``.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Sequence

import aiosqlite

from .errors import StoreError
from .models import (
    AddressMetrics,
    BlockRange,
    ScanProgress,
    SellOwnershipStats,
    SellTransaction,
)
from .utils import normalize_address, parse_datetime

logger = logging.getLogger(__name__)

# SQLite's default SQLITE_MAX_VARIABLE_NUMBER is 999 on older builds.
_IN_CHUNK = 500

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS miner_addresses (
        id                  INTEGER PRIMARY KEY AUTOINCREMENT,
        address             TEXT NOT NULL,
        chain               TEXT NOT NULL,
        total_miners        INTEGER NOT NULL DEFAULT 0,
        active_miners       INTEGER NOT NULL DEFAULT 0,
        is_active           INTEGER NOT NULL DEFAULT 1,
        first_discovered_at TEXT NOT NULL,
        last_updated_at     TEXT NOT NULL,
        UNIQUE(address, chain)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_miner_chain ON miner_addresses(chain)",
    """
    CREATE TABLE IF NOT EXISTS scan_progress (
        chain                 TEXT PRIMARY KEY,
        last_checked_miner_id INTEGER NOT NULL DEFAULT 0,
        total_miners_found    INTEGER NOT NULL DEFAULT 0,
        last_updated_at       TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS lp_sell_transactions (
        chain             TEXT NOT NULL,
        tx_hash           TEXT NOT NULL,
        seller_address    TEXT NOT NULL,
        token_amount      REAL NOT NULL DEFAULT 0,
        token_symbol      TEXT NOT NULL DEFAULT '',
        proceeds_amount   REAL NOT NULL DEFAULT 0,
        proceeds_symbol   TEXT NOT NULL DEFAULT '',
        block_number      INTEGER NOT NULL DEFAULT 0,
        block_timestamp   TEXT,
        transfer_count    INTEGER NOT NULL DEFAULT 0,
        is_direct_miner   INTEGER NOT NULL DEFAULT 0,
        is_indirect_miner INTEGER NOT NULL DEFAULT 0,
        miner_address     TEXT,
        trace_depth       INTEGER,
        trace_path        TEXT,
        created_at        TEXT NOT NULL,
        updated_at        TEXT NOT NULL,
        PRIMARY KEY (chain, tx_hash)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sell_block ON lp_sell_transactions(chain, block_number DESC)",
    "CREATE INDEX IF NOT EXISTS idx_sell_seller ON lp_sell_transactions(chain, seller_address)",
    """
    CREATE TABLE IF NOT EXISTS lp_scan_progress (
        chain              TEXT PRIMARY KEY,
        last_scanned_block INTEGER NOT NULL DEFAULT 0,
        total_transactions INTEGER NOT NULL DEFAULT 0,
        last_updated_at    TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS address_ratios (
        address            TEXT NOT NULL,
        chain              TEXT NOT NULL,
        total_deposits     REAL NOT NULL DEFAULT 0,
        total_withdrawals  REAL NOT NULL DEFAULT 0,
        ratio              REAL NOT NULL DEFAULT 0,
        total_miners       INTEGER NOT NULL DEFAULT 0,
        active_miners      INTEGER NOT NULL DEFAULT 0,
        last_calculated_at TEXT NOT NULL,
        UNIQUE(address, chain)
    )
    """,
)

_SELL_COLUMNS = (
    "chain", "tx_hash", "seller_address", "token_amount", "token_symbol",
    "proceeds_amount", "proceeds_symbol", "block_number", "block_timestamp",
    "transfer_count", "is_direct_miner", "is_indirect_miner", "miner_address",
    "trace_depth", "trace_path", "created_at", "updated_at",
)

# Columns refreshed when a known (chain, tx_hash) is seen again; created_at stays.
_SELL_UPSERT = (
    f"INSERT INTO lp_sell_transactions ({', '.join(_SELL_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in _SELL_COLUMNS)}) "
    "ON CONFLICT(chain, tx_hash) DO UPDATE SET "
    + ", ".join(
        f"{c} = excluded.{c}"
        for c in _SELL_COLUMNS
        if c not in ("chain", "tx_hash", "created_at")
    )
)


def _now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _sell_params(tx: SellTransaction, now: str) -> tuple[Any, ...]:
    return (
        tx.chain,
        normalize_address(tx.tx_hash),
        normalize_address(tx.seller_address),
        tx.token_amount,
        tx.token_symbol,
        tx.proceeds_amount,
        tx.proceeds_symbol,
        tx.block_number,
        tx.block_timestamp.isoformat() if tx.block_timestamp else None,
        tx.transfer_count,
        int(tx.is_direct_miner),
        int(tx.is_indirect_miner),
        normalize_address(tx.miner_address) or None,
        tx.trace_depth,
        json.dumps(tx.trace_path) if tx.trace_path else None,
        (tx.created_at.isoformat() if tx.created_at else now),
        now,
    )


def _row_to_sell(row: aiosqlite.Row) -> SellTransaction:
    return SellTransaction(
        chain=row["chain"],
        tx_hash=row["tx_hash"],
        seller_address=row["seller_address"],
        token_amount=row["token_amount"],
        token_symbol=row["token_symbol"],
        proceeds_amount=row["proceeds_amount"],
        proceeds_symbol=row["proceeds_symbol"],
        block_number=row["block_number"],
        block_timestamp=parse_datetime(row["block_timestamp"]),
        transfer_count=row["transfer_count"],
        is_direct_miner=bool(row["is_direct_miner"]),
        is_indirect_miner=bool(row["is_indirect_miner"]),
        miner_address=row["miner_address"],
        trace_depth=row["trace_depth"],
        trace_path=json.loads(row["trace_path"]) if row["trace_path"] else None,
        created_at=parse_datetime(row["created_at"]),
        updated_at=parse_datetime(row["updated_at"]),
    )


def _chunks(items: Sequence[str], size: int = _IN_CHUNK) -> Iterable[Sequence[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


class SQLiteStore:
    """Async store with a lazily opened persistent connection."""

    def __init__(self, db_path: str = "data/miner_watch.db") -> None:
        self._db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None
        self._initialised = False

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    async def _get_conn(self) -> aiosqlite.Connection:
        if self._conn is not None and self._initialised:
            return self._conn
        try:
            if self._conn is None:
                os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
                self._conn = await aiosqlite.connect(self._db_path)
                self._conn.row_factory = aiosqlite.Row
                await self._conn.execute("PRAGMA journal_mode=WAL")
            for statement in _SCHEMA:
                await self._conn.execute(statement)
            await self._conn.commit()
        except (aiosqlite.Error, OSError) as exc:
            raise StoreError(f"cannot open store at {self._db_path}: {exc}") from exc
        self._initialised = True
        return self._conn

    async def _execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run one write statement and commit; returns the affected row count."""
        db = await self._get_conn()
        try:
            cursor = await db.execute(sql, params)
            await db.commit()
            return cursor.rowcount
        except aiosqlite.Error as exc:
            raise StoreError(f"write failed: {exc}") from exc

    async def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[aiosqlite.Row]:
        db = await self._get_conn()
        try:
            cursor = await db.execute(sql, params)
            return list(await cursor.fetchall())
        except aiosqlite.Error as exc:
            raise StoreError(f"read failed: {exc}") from exc

    async def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        rows = await self._fetchall(sql, params)
        return rows[0] if rows else None

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            self._initialised = False

    # ------------------------------------------------------------------
    # Miner registry
    # ------------------------------------------------------------------

    async def is_known_miner(self, chain: str, address: str) -> bool:
        row = await self._fetchone(
            "SELECT 1 FROM miner_addresses WHERE chain = ? AND address = ? LIMIT 1",
            (chain, normalize_address(address)),
        )
        return row is not None

    async def known_miners_among(self, chain: str, addresses: Iterable[str]) -> set[str]:
        """Return the subset of *addresses* present in the registry (lower-cased)."""
        wanted = sorted({normalize_address(a) for a in addresses if a})
        found: set[str] = set()
        for chunk in _chunks(wanted):
            placeholders = ", ".join("?" for _ in chunk)
            rows = await self._fetchall(
                f"SELECT address FROM miner_addresses "
                f"WHERE chain = ? AND address IN ({placeholders})",
                (chain, *chunk),
            )
            found.update(r["address"] for r in rows)
        return found

    async def store_miner_addresses(
        self, chain: str, miners: dict[str, tuple[int, int]]
    ) -> int:
        """Upsert owners with ``(miners_found, active_found)`` increments.

        Returns the number of owners that were not in the registry before.
        """
        if not miners:
            return 0
        existing = await self.known_miners_among(chain, miners.keys())
        now = _now()
        db = await self._get_conn()
        try:
            for address, (total, active) in miners.items():
                await db.execute(
                    """
                    INSERT INTO miner_addresses
                        (address, chain, total_miners, active_miners, is_active,
                         first_discovered_at, last_updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(address, chain) DO UPDATE SET
                        total_miners = total_miners + excluded.total_miners,
                        active_miners = active_miners + excluded.active_miners,
                        is_active = CASE WHEN active_miners + excluded.active_miners > 0
                                         THEN 1 ELSE 0 END,
                        last_updated_at = excluded.last_updated_at
                    """,
                    (normalize_address(address), chain, total, active,
                     int(active > 0), now, now),
                )
            await db.commit()
        except aiosqlite.Error as exc:
            raise StoreError(f"miner upsert failed: {exc}") from exc
        return len({normalize_address(a) for a in miners} - existing)

    async def list_miner_addresses(
        self, chain: str, *, limit: Optional[int] = None
    ) -> list[str]:
        sql = "SELECT address FROM miner_addresses WHERE chain = ? ORDER BY id"
        params: tuple[Any, ...] = (chain,)
        if limit is not None:
            sql += " LIMIT ?"
            params += (limit,)
        return [r["address"] for r in await self._fetchall(sql, params)]

    async def count_miner_addresses(self, chain: str) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) AS n FROM miner_addresses WHERE chain = ?", (chain,)
        )
        return int(row["n"]) if row else 0

    # ------------------------------------------------------------------
    # Miner scan progress
    # ------------------------------------------------------------------

    async def get_scan_progress(self, chain: str) -> tuple[int, int]:
        """Return ``(last_checked_miner_id, total_miners_found)``."""
        row = await self._fetchone(
            "SELECT last_checked_miner_id, total_miners_found FROM scan_progress WHERE chain = ?",
            (chain,),
        )
        if row is None:
            return (0, 0)
        return (row["last_checked_miner_id"], row["total_miners_found"])

    async def update_scan_progress(
        self, chain: str, last_checked_miner_id: int, total_miners_found: int
    ) -> None:
        await self._execute(
            """
            INSERT INTO scan_progress (chain, last_checked_miner_id, total_miners_found, last_updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(chain) DO UPDATE SET
                last_checked_miner_id = excluded.last_checked_miner_id,
                total_miners_found = excluded.total_miners_found,
                last_updated_at = excluded.last_updated_at
            """,
            (chain, last_checked_miner_id, total_miners_found, _now()),
        )

    async def reset_scan_progress(self, chain: str) -> None:
        await self._execute("DELETE FROM scan_progress WHERE chain = ?", (chain,))

    # ------------------------------------------------------------------
    # LP sells
    # ------------------------------------------------------------------

    async def upsert_sell_transactions(self, rows: Sequence[SellTransaction]) -> int:
        """Insert or refresh sells keyed by ``(chain, tx_hash)``; one commit per call."""
        if not rows:
            return 0
        now = _now()
        db = await self._get_conn()
        try:
            await db.executemany(_SELL_UPSERT, [_sell_params(tx, now) for tx in rows])
            await db.commit()
        except aiosqlite.Error as exc:
            raise StoreError(f"sell upsert failed: {exc}") from exc
        return len(rows)

    async def get_sell_transaction(self, chain: str, tx_hash: str) -> Optional[SellTransaction]:
        row = await self._fetchone(
            "SELECT * FROM lp_sell_transactions WHERE chain = ? AND tx_hash = ?",
            (chain, normalize_address(tx_hash)),
        )
        return _row_to_sell(row) if row is not None else None

    async def list_sell_transactions(
        self, chain: str, *, limit: int = 50, offset: int = 0
    ) -> list[SellTransaction]:
        rows = await self._fetchall(
            """
            SELECT * FROM lp_sell_transactions WHERE chain = ?
            ORDER BY block_number DESC, tx_hash
            LIMIT ? OFFSET ?
            """,
            (chain, limit, offset),
        )
        return [_row_to_sell(r) for r in rows]

    async def count_sell_transactions(self, chain: str) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) AS n FROM lp_sell_transactions WHERE chain = ?", (chain,)
        )
        return int(row["n"]) if row else 0

    async def all_sell_hashes(self, chain: str) -> list[str]:
        rows = await self._fetchall(
            "SELECT tx_hash FROM lp_sell_transactions WHERE chain = ? ORDER BY block_number DESC",
            (chain,),
        )
        return [r["tx_hash"] for r in rows]

    async def update_trace_outcome(
        self,
        chain: str,
        tx_hash: str,
        *,
        is_direct_miner: bool,
        is_indirect_miner: bool,
        miner_address: Optional[str],
        trace_depth: Optional[int],
        trace_path: Optional[list[str]],
    ) -> bool:
        """Overwrite the trace columns of one sell.  Returns False if it does not exist."""
        updated = await self._execute(
            """
            UPDATE lp_sell_transactions SET
                is_direct_miner = ?, is_indirect_miner = ?, miner_address = ?,
                trace_depth = ?, trace_path = ?, updated_at = ?
            WHERE chain = ? AND tx_hash = ?
            """,
            (
                int(is_direct_miner),
                int(is_indirect_miner),
                normalize_address(miner_address) or None,
                trace_depth,
                json.dumps(trace_path) if trace_path else None,
                _now(),
                chain,
                normalize_address(tx_hash),
            ),
        )
        return updated > 0

    async def sell_stats(self, chain: str) -> SellOwnershipStats:
        row = await self._fetchone(
            """
            SELECT
                COUNT(*) AS total,
                COALESCE(SUM(is_direct_miner), 0) AS direct,
                COALESCE(SUM(CASE WHEN is_direct_miner = 0 AND is_indirect_miner = 1
                                  THEN 1 ELSE 0 END), 0) AS indirect,
                COALESCE(SUM(token_amount), 0) AS volume,
                COALESCE(SUM(CASE WHEN is_direct_miner = 1 OR is_indirect_miner = 1
                                  THEN token_amount ELSE 0 END), 0) AS miner_volume
            FROM lp_sell_transactions WHERE chain = ?
            """,
            (chain,),
        )
        total = int(row["total"]) if row else 0
        direct = int(row["direct"]) if row else 0
        indirect = int(row["indirect"]) if row else 0
        return SellOwnershipStats(
            chain=chain,
            total_sells=total,
            direct_miner_sells=direct,
            indirect_miner_sells=indirect,
            non_miner_sells=total - direct - indirect,
            total_token_sold=float(row["volume"]) if row else 0.0,
            miner_token_sold=float(row["miner_volume"]) if row else 0.0,
            miner_linked_share=round((direct + indirect) / total, 4) if total else 0.0,
        )

    # ------------------------------------------------------------------
    # LP scan progress
    # ------------------------------------------------------------------

    async def get_lp_scan_progress(self, chain: str) -> ScanProgress:
        row = await self._fetchone(
            "SELECT * FROM lp_scan_progress WHERE chain = ?", (chain,)
        )
        if row is None:
            return ScanProgress(chain=chain)
        return ScanProgress(
            chain=chain,
            last_scanned_block=row["last_scanned_block"],
            total_transactions=row["total_transactions"],
            last_updated_at=parse_datetime(row["last_updated_at"]),
        )

    async def update_lp_scan_progress(self, chain: str, last_block: int, added: int) -> None:
        """Advance the scanned-block cursor and add *added* to the running count."""
        await self._execute(
            """
            INSERT INTO lp_scan_progress (chain, last_scanned_block, total_transactions, last_updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(chain) DO UPDATE SET
                last_scanned_block = MAX(last_scanned_block, excluded.last_scanned_block),
                total_transactions = total_transactions + excluded.total_transactions,
                last_updated_at = excluded.last_updated_at
            """,
            (chain, last_block, added, _now()),
        )

    async def next_block_range(
        self, chain: str, range_size: int, start_block: int = 0
    ) -> BlockRange:
        """Range following the last scanned block (or *start_block* on first run)."""
        progress = await self.get_lp_scan_progress(chain)
        start = max(progress.last_scanned_block + 1, start_block) if progress.last_scanned_block else start_block
        return BlockRange(start_block=start, end_block=start + range_size - 1)

    # ------------------------------------------------------------------
    # Withdrawal ratios
    # ------------------------------------------------------------------

    async def store_ratio(self, metrics: AddressMetrics) -> None:
        await self._execute(
            """
            INSERT INTO address_ratios
                (address, chain, total_deposits, total_withdrawals, ratio,
                 total_miners, active_miners, last_calculated_at)
            VALUES (?, ?, ?, ?, ?,
                    COALESCE((SELECT total_miners FROM miner_addresses
                              WHERE address = ? AND chain = ?), 0),
                    COALESCE((SELECT active_miners FROM miner_addresses
                              WHERE address = ? AND chain = ?), 0),
                    ?)
            ON CONFLICT(address, chain) DO UPDATE SET
                total_deposits = excluded.total_deposits,
                total_withdrawals = excluded.total_withdrawals,
                ratio = excluded.ratio,
                total_miners = excluded.total_miners,
                active_miners = excluded.active_miners,
                last_calculated_at = excluded.last_calculated_at
            """,
            (
                normalize_address(metrics.address), metrics.chain,
                metrics.total_deposits, metrics.total_withdrawals, metrics.ratio,
                normalize_address(metrics.address), metrics.chain,
                normalize_address(metrics.address), metrics.chain,
                (metrics.last_calculated_at or datetime.now(tz=timezone.utc)).isoformat(),
            ),
        )

    async def cached_ratios(self, chain: str, *, limit: int = 100) -> list[AddressMetrics]:
        rows = await self._fetchall(
            """
            SELECT * FROM address_ratios WHERE chain = ?
            ORDER BY ratio DESC, total_withdrawals DESC
            LIMIT ?
            """,
            (chain, limit),
        )
        return [
            AddressMetrics(
                address=r["address"],
                chain=r["chain"],
                total_deposits=r["total_deposits"],
                total_withdrawals=r["total_withdrawals"],
                ratio=r["ratio"],
                total_miners=r["total_miners"],
                active_miners=r["active_miners"],
                last_calculated_at=parse_datetime(r["last_calculated_at"]),
            )
            for r in rows
        ]

    async def addresses_needing_ratio(self, chain: str, *, limit: int = 50) -> list[str]:
        rows = await self._fetchall(
            """
            SELECT m.address FROM miner_addresses m
            LEFT JOIN address_ratios r ON r.address = m.address AND r.chain = m.chain
            WHERE m.chain = ? AND r.address IS NULL
            ORDER BY m.id
            LIMIT ?
            """,
            (chain, limit),
        )
        return [r["address"] for r in rows]

    # ------------------------------------------------------------------
    # Administrative reset
    # ------------------------------------------------------------------

    async def clear_chain(self, chain: str) -> dict[str, int]:
        """Delete every row for *chain*.  The only deletion path for sells."""
        deleted: dict[str, int] = {}
        for table in (
            "lp_sell_transactions",
            "lp_scan_progress",
            "address_ratios",
            "scan_progress",
            "miner_addresses",
        ):
            deleted[table] = await self._execute(
                f"DELETE FROM {table} WHERE chain = ?", (chain,)
            )
        logger.warning("Store cleared for %s: %s", chain, deleted)
        return deleted
