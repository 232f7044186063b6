#!/usr/bin/env python3
"""
SQLite Replica Store

Durable key-value replica on aiosqlite. Values are stored as JSON text in a
single table; every write is an upsert so an interrupted save can simply be
redone.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

import aiosqlite

from .store import ListenerMixin

logger = logging.getLogger(__name__)


class SQLiteStore(ListenerMixin):
    def __init__(self, db_path: str = "chatsync.db"):
        super().__init__()
        self.db_path = db_path
        self._lock = asyncio.Lock()
        self._initialized = False

    async def _ensure_initialized(self):
        """Initialize database schema if not already done."""
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return

            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("PRAGMA journal_mode=WAL")
                await db.execute("PRAGMA synchronous=NORMAL")
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS kv (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """)
                await db.commit()

            self._initialized = True
            logger.info("SQLite replica store ready at %s", self.db_path)

    async def get(self, key: str) -> Any | None:
        await self._ensure_initialized()
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    async def set(self, key: str, value: Any) -> None:
        await self._ensure_initialized()
        old = await self.get(key) if self._listeners else None
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, json.dumps(value, ensure_ascii=False), time.time()),
            )
            await db.commit()
        logger.debug("← Repository: set %s", key)
        self._notify(key, "set", old, value)

    async def delete(self, key: str) -> None:
        await self._ensure_initialized()
        old = await self.get(key) if self._listeners else None
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM kv WHERE key = ?", (key,))
            await db.commit()
            deleted = cursor.rowcount > 0
        if deleted:
            logger.debug("← Repository: deleted %s", key)
            self._notify(key, "delete", old, None)

    async def list(self) -> list[str]:
        await self._ensure_initialized()
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT key FROM kv ORDER BY key") as cursor:
                rows = await cursor.fetchall()
        return [row[0] for row in rows]
