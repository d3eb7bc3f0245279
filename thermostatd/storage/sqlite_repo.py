from __future__ import annotations
from datetime import datetime
from typing import Mapping, Optional

import aiosqlite

from ..core.timeutil import now_utc

_SCHEMA = """
CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""

_UPSERT = (
    "INSERT INTO config(key, value, updated_at) VALUES (?, ?, ?) "
    "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at"
)


class SQLiteRepository:
    """Persists the config store, one JSON-encoded row per key."""

    def __init__(self, path: str) -> None:
        self._path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(_SCHEMA)
            await db.commit()

    async def load_all(self) -> dict[str, str]:
        async with aiosqlite.connect(self._path) as db:
            async with db.execute("SELECT key, value FROM config") as cur:
                return {key: value async for key, value in cur}

    async def save(self, values: Mapping[str, str], at: Optional[datetime] = None) -> None:
        """Upsert ``values`` in a single transaction, stamped with ``at``."""
        stamp = (at or now_utc()).isoformat()
        async with aiosqlite.connect(self._path) as db:
            await db.executemany(_UPSERT, [(key, value, stamp) for key, value in values.items()])
            await db.commit()
