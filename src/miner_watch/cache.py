"""
Caches for Miner Watch.

Two tiers:
1. **In-memory TTL cache**: bounded, process-local.  Backs the trace
   memo keyed ``"{chain}:{address}:{depth}"`` so sibling branches and
   consecutive batch items do not refetch the same ancestors.
2. **SQLite persistent cache**: survives restarts.  Holds completed
   seller trace results keyed ``"trace:{chain}:{address}"``.

Both are advisory: a miss or a failed write only costs a recomputation.
"""

from __future__ import annotations

import json
import logging
import os
import time
from collections import OrderedDict
from typing import Any, Optional

import aiosqlite

logger = logging.getLogger(__name__)


class TTLCache:
    """Bounded TTL cache; when full, expired entries go first, then the oldest.

    Process-local, so each Uvicorn worker keeps its own memo.
    """

    def __init__(self, default_ttl: int = 300, max_entries: int = 10_000) -> None:
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self.hits = 0
        self.misses = 0

    def _live(self, key: str) -> Optional[tuple[float, Any]]:
        entry = self._entries.get(key)
        if entry is not None and time.monotonic() > entry[0]:
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> Optional[Any]:
        entry = self._live(key)
        if entry is None:
            self.misses += 1
            return None
        self.hits += 1
        return entry[1]

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        lifetime = self._default_ttl if ttl is None else ttl
        self._entries.pop(key, None)
        self._entries[key] = (time.monotonic() + lifetime, value)
        if len(self._entries) > self._max_entries:
            self._drop_expired()
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def _drop_expired(self) -> None:
        now = time.monotonic()
        for key in [k for k, (exp, _) in self._entries.items() if now > exp]:
            del self._entries[key]

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict[str, int]:
        return {"entries": len(self), "hits": self.hits, "misses": self.misses}

    def __contains__(self, key: str) -> bool:
        return self._live(key) is not None

    def __len__(self) -> int:
        self._drop_expired()
        return len(self._entries)


# ---------------------------------------------------------------------------
# SQLite persistent cache
# ---------------------------------------------------------------------------

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS cache (
        key        TEXT PRIMARY KEY,
        value      TEXT NOT NULL,
        expires_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_cache_expires ON cache(expires_at)",
)


def _encode(value: Any) -> str:
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json", by_alias=True)
    return json.dumps(value, default=str)


def _like_prefix(prefix: str) -> str:
    return prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"


class SQLiteCache:
    """Async SQLite key/value cache with per-entry expiry.

    Values are stored as JSON; pydantic models are dumped with their
    camelCase aliases.  The connection is opened on first use.  Every
    failure is logged and treated as a miss.
    """

    def __init__(
        self,
        db_path: str = "data/cache.db",
        default_ttl: int = 300,
        max_entries: int = 50_000,
    ) -> None:
        self._db_path = db_path
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self._conn: Optional[aiosqlite.Connection] = None

    async def _db(self) -> aiosqlite.Connection:
        if self._conn is None:
            os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
            conn = await aiosqlite.connect(self._db_path)
            await conn.execute("PRAGMA journal_mode=WAL")
            for statement in _SCHEMA:
                await conn.execute(statement)
            await conn.commit()
            self._conn = conn
        return self._conn

    async def _write(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        db = await self._db()
        cursor = await db.execute(sql, params)
        await db.commit()
        return cursor.rowcount

    async def get(self, key: str) -> Optional[Any]:
        try:
            db = await self._db()
            cursor = await db.execute(
                "SELECT value, expires_at FROM cache WHERE key = ?", (key,)
            )
            row = await cursor.fetchone()
        except (aiosqlite.Error, OSError):
            logger.warning("SQLite cache get failed for %s", key, exc_info=True)
            return None
        if row is None:
            return None
        value_json, expires_at = row
        if time.time() > expires_at:
            await self.invalidate(key)
            return None
        return json.loads(value_json)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        lifetime = self._default_ttl if ttl is None else ttl
        try:
            await self._write(
                "INSERT OR REPLACE INTO cache (key, value, expires_at) VALUES (?, ?, ?)",
                (key, _encode(value), time.time() + lifetime),
            )
            await self._trim()
        except (aiosqlite.Error, OSError, TypeError, ValueError):
            logger.warning("SQLite cache set failed for %s", key, exc_info=True)

    async def _trim(self) -> None:
        db = await self._db()
        cursor = await db.execute("SELECT COUNT(*) FROM cache")
        (count,) = await cursor.fetchone()
        if count <= self._max_entries:
            return
        count -= await self._write("DELETE FROM cache WHERE expires_at < ?", (time.time(),))
        if count > self._max_entries:
            await self._write(
                "DELETE FROM cache WHERE key IN "
                "(SELECT key FROM cache ORDER BY expires_at ASC LIMIT ?)",
                (count - self._max_entries,),
            )

    async def invalidate(self, key: str) -> None:
        try:
            await self._write("DELETE FROM cache WHERE key = ?", (key,))
        except (aiosqlite.Error, OSError):
            logger.warning("SQLite cache invalidate failed for %s", key, exc_info=True)

    async def invalidate_prefix(self, prefix: str) -> int:
        """Drop every key starting with *prefix* (chain-wide resets)."""
        try:
            return await self._write(
                "DELETE FROM cache WHERE key LIKE ? ESCAPE '\\'", (_like_prefix(prefix),)
            )
        except (aiosqlite.Error, OSError):
            logger.warning("SQLite cache prefix invalidate failed for %s", prefix, exc_info=True)
            return 0

    async def clear(self) -> None:
        try:
            await self._write("DELETE FROM cache")
        except (aiosqlite.Error, OSError):
            logger.warning("SQLite cache clear failed", exc_info=True)

    async def purge_expired(self) -> int:
        """Delete expired entries; returns the number removed."""
        try:
            return await self._write("DELETE FROM cache WHERE expires_at < ?", (time.time(),))
        except (aiosqlite.Error, OSError):
            logger.warning("SQLite cache purge failed", exc_info=True)
            return 0

    async def close(self) -> None:
        if self._conn is not None:
            try:
                await self._conn.close()
            except aiosqlite.Error:
                logger.debug("SQLite cache close failed", exc_info=True)
            self._conn = None
