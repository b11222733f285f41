import asyncio
import sqlite3
import time
from typing import Dict, Optional, Protocol

import aiosqlite

from signal_scanner.core.errors import StorageFullError

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS scan_cache (
key TEXT PRIMARY KEY,
payload TEXT,
ts REAL
);
"""


class CacheStore(Protocol):
    """Key/value persistence for serialized cache records."""

    async def get(self, key: str) -> Optional[str]: ...

    async def put(self, key: str, payload: str) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def clear(self) -> None: ...


def _check_size(key: str, payload: str, max_bytes: Optional[int]) -> None:
    size = len(payload.encode("utf-8"))
    if max_bytes is not None and size > max_bytes:
        raise StorageFullError(f"payload for {key!r} is {size} bytes, limit is {max_bytes}")


class MemoryCacheStore:
    """Process-local store; used by tests and one-shot CLI runs."""

    def __init__(self, max_bytes: Optional[int] = None) -> None:
        self.max_bytes = max_bytes
        self.data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def put(self, key: str, payload: str) -> None:
        _check_size(key, payload, self.max_bytes)
        self.data[key] = payload

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)

    async def clear(self) -> None:
        self.data.clear()


class SqliteCacheStore:

    def __init__(self, db_path: str = "scanner.db", max_bytes: Optional[int] = None) -> None:
        self.db_path = db_path
        self.max_bytes = max_bytes
        self._conn: Optional[aiosqlite.Connection] = None
        self._conn_lock = asyncio.Lock()

    async def init(self) -> None:
        """Open the connection and ensure the schema exists."""
        async with self._conn_lock:
            if self._conn:
                return
            self._conn = await aiosqlite.connect(self.db_path)
            await self._conn.execute(CREATE_TABLE_SQL)
            await self._conn.commit()

    async def close(self) -> None:
        async with self._conn_lock:
            if self._conn:
                await self._conn.close()
                self._conn = None

    def _require_conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("SqliteCacheStore not initialized. Call .init() before use.")
        return self._conn

    async def get(self, key: str) -> Optional[str]:
        conn = self._require_conn()
        async with conn.execute("SELECT payload FROM scan_cache WHERE key = ?", (key,)) as cur:
            row = await cur.fetchone()
        return row[0] if row else None

    async def put(self, key: str, payload: str) -> None:
        _check_size(key, payload, self.max_bytes)
        conn = self._require_conn()
        try:
            await conn.execute(
                "REPLACE INTO scan_cache (key, payload, ts) VALUES (?, ?, ?)",
                (key, payload, time.time()),
            )
            await conn.commit()
        except sqlite3.OperationalError as e:
            if "full" in str(e).lower():
                await conn.rollback()
                raise StorageFullError(str(e)) from e
            raise

    async def delete(self, key: str) -> None:
        conn = self._require_conn()
        await conn.execute("DELETE FROM scan_cache WHERE key = ?", (key,))
        await conn.commit()

    async def clear(self) -> None:
        conn = self._require_conn()
        await conn.execute("DELETE FROM scan_cache")
        await conn.commit()


# helper to create and init a store instance (it's outside the class)
async def create_and_init(db_path: str = "scanner.db", max_bytes: Optional[int] = None) -> SqliteCacheStore:
    store = SqliteCacheStore(db_path=db_path, max_bytes=max_bytes)
    await store.init()
    return store
