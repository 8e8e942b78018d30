"""SQLite-backed chat state store.

One row per conversation holding the serialized ChatState. All writes go
through ``_atomic_write()`` so concurrent coroutines sharing the connection
cannot interleave inside one implicit transaction.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

from panelsync.logger import logger
from panelsync.state.store import _StoreBase
from panelsync.types import ChatState
from panelsync.utils import now_ms

_SCHEMA = """
CREATE TABLE IF NOT EXISTS chat_state (
    conversation_id TEXT PRIMARY KEY,
    state TEXT NOT NULL,
    updated_at INTEGER NOT NULL
)
"""


class SqliteChatStateStore(_StoreBase):
    def __init__(self, path: str | Path = ":memory:", **kwargs) -> None:
        super().__init__(**kwargs)
        self.path = str(path)
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def open(self) -> None:
        if self._db is not None:
            return
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute(_SCHEMA)
        await self._db.commit()
        logger.info("Chat state database ready", path=self.path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> SqliteChatStateStore:
        await self.open()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    def _get_db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Store not opened. Call open() first.")
        return self._db

    @asynccontextmanager
    async def _atomic_write(self) -> AsyncIterator[aiosqlite.Connection]:
        db = self._get_db()
        async with self._write_lock:
            try:
                yield db
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def get_state(self, conversation_id: str) -> ChatState:
        db = self._get_db()
        cursor = await db.execute(
            "SELECT state FROM chat_state WHERE conversation_id = ?",
            (conversation_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return ChatState()
        return ChatState.model_validate_json(row["state"])

    async def set_state(self, conversation_id: str, state: ChatState) -> None:
        async with self._atomic_write() as db:
            await db.execute(
                "INSERT INTO chat_state (conversation_id, state, updated_at) VALUES (?, ?, ?)"
                " ON CONFLICT(conversation_id) DO UPDATE"
                " SET state = excluded.state, updated_at = excluded.updated_at",
                (conversation_id, state.model_dump_json(), now_ms()),
            )
        await self._notify(conversation_id, state)

    async def delete_state(self, conversation_id: str) -> bool:
        async with self._atomic_write() as db:
            cursor = await db.execute(
                "DELETE FROM chat_state WHERE conversation_id = ?",
                (conversation_id,),
            )
            return cursor.rowcount > 0

    async def conversations(self) -> list[str]:
        db = self._get_db()
        cursor = await db.execute("SELECT conversation_id FROM chat_state ORDER BY conversation_id")
        rows = await cursor.fetchall()
        return [row["conversation_id"] for row in rows]
