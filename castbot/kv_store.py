"""
Key-value store on top of the SQLite ``kv`` table.

Keys are plain strings (``session:{id}``, ``cursor:{short_id}``, ...) and
values are JSON-serialisable objects. Entries may carry a TTL; an expired
entry reads as missing and is removed lazily or by ``purge_expired``.
There are no transactions: every call is an independent read or write and
concurrent writers to the same key resolve as last-writer-wins.
"""
import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, List, Optional, Union

from castbot.database import get_db

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Async get/set/delete/keys over a single SQLite file."""

    def __init__(self, path: Union[str, Path], clock: Callable[[], float] = time.time):
        self.path = path
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    async def get(self, key: str) -> Optional[Any]:
        async with get_db(self.path) as db:
            cursor = await db.execute(
                "SELECT value, expires_at FROM kv WHERE key = ?",
                (key,)
            )
            row = await cursor.fetchone()

            if not row:
                return None

            if row["expires_at"] is not None and row["expires_at"] <= self._clock():
                await db.execute("DELETE FROM kv WHERE key = ?", (key,))
                await db.commit()
                return None

            return json.loads(row["value"])

    async def set(self, key: str, value: Any, ttl: Optional[float] = None):
        """Store ``value`` under ``key``, replacing any previous entry."""
        expires_at = self._clock() + ttl if ttl is not None else None
        async with get_db(self.path) as db:
            await db.execute(
                """
                INSERT INTO kv (key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    expires_at = excluded.expires_at,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (key, json.dumps(value), expires_at)
            )
            await db.commit()

    async def delete(self, key: str) -> bool:
        async with get_db(self.path) as db:
            cursor = await db.execute("DELETE FROM kv WHERE key = ?", (key,))
            await db.commit()
            return cursor.rowcount > 0

    async def keys(self, pattern: str = "*") -> List[str]:
        """Return live keys matching a glob pattern such as ``session:*``."""
        async with get_db(self.path) as db:
            cursor = await db.execute(
                "SELECT key FROM kv WHERE key GLOB ? AND (expires_at IS NULL OR expires_at > ?) ORDER BY key",
                (pattern, self._clock())
            )
            rows = await cursor.fetchall()
            return [row["key"] for row in rows]

    async def purge_expired(self) -> int:
        """Delete every expired entry and return how many were removed."""
        async with get_db(self.path) as db:
            cursor = await db.execute(
                "DELETE FROM kv WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (self._clock(),)
            )
            await db.commit()
            if cursor.rowcount:
                logger.info("Purged %d expired keys", cursor.rowcount)
            return cursor.rowcount
