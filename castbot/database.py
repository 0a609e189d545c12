"""
SQLite database initialization and connection management.
"""
import aiosqlite
from pathlib import Path
from typing import Union


def get_db(path: Union[str, Path]):
    """Get database connection as an async context manager."""
    # Rows come back as aiosqlite.Row so callers can index by column name
    class DBConnection:
        async def __aenter__(self):
            self.conn = await aiosqlite.connect(path)
            self.conn.row_factory = aiosqlite.Row
            return self.conn

        async def __aexit__(self, exc_type, exc_val, exc_tb):
            await self.conn.close()

    return DBConnection()


async def init_database(path: Union[str, Path]):
    """Initialize database with the key-value table and its indexes."""
    Path(path).parent.mkdir(parents=True, exist_ok=True)

    async with aiosqlite.connect(path) as db:
        await db.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        await db.execute("""
            CREATE INDEX IF NOT EXISTS idx_kv_expires_at
            ON kv(expires_at)
        """)

        await db.commit()
