import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from .errors import PersistenceError


def utc_now() -> str:
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat() + "Z"


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS chats(
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    title TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS chat_messages(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    chat_id TEXT,
                    position INTEGER,
                    message_id TEXT,
                    role TEXT,
                    message_json TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_chat_messages_chat ON chat_messages(chat_id, position);
                CREATE INDEX IF NOT EXISTS idx_chats_user ON chats(user_id, updated_at);
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def save_chat(self, chat_id: str, user_id: str, title: str, messages: List[Dict[str, Any]]) -> None:
        """Replace the stored transcript of a chat with the full message list."""
        now = utc_now()
        rows = [
            (chat_id, idx, str(m.get("id") or ""), m.get("role") or "", json.dumps(m, ensure_ascii=True), now)
            for idx, m in enumerate(messages)
        ]
        try:
            async with aiosqlite.connect(self.path) as db:
                # Only the owner may overwrite a chat; the upsert is a no-op for anyone else.
                cursor = await db.execute(
                    "INSERT INTO chats(id, user_id, title, created_at, updated_at) VALUES (?,?,?,?,?) "
                    "ON CONFLICT(id) DO UPDATE SET updated_at=excluded.updated_at "
                    "WHERE chats.user_id = excluded.user_id",
                    (chat_id, user_id, title, now, now),
                )
                if cursor.rowcount == 0:
                    await db.rollback()
                    raise PersistenceError(f"chat {chat_id} belongs to another user")
                await db.execute("DELETE FROM chat_messages WHERE chat_id=?", (chat_id,))
                await db.executemany(
                    "INSERT INTO chat_messages(chat_id, position, message_id, role, message_json, created_at) "
                    "VALUES (?,?,?,?,?,?)",
                    rows,
                )
                await db.commit()
        except aiosqlite.Error as exc:
            raise PersistenceError(f"could not save chat {chat_id}: {exc}") from exc

    async def list_chats(self, user_id: str, limit: int = 50) -> List[dict]:
        rows = await self.fetchall(
            "SELECT id, user_id, title, created_at, updated_at FROM chats WHERE user_id=? "
            "ORDER BY updated_at DESC LIMIT ?",
            (user_id, limit),
        )
        return [dict(row) for row in rows]

    async def get_chat(self, chat_id: str, user_id: Optional[str] = None) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, user_id, title, created_at, updated_at FROM chats WHERE id=?",
            (chat_id,),
        )
        if not row or (user_id is not None and row["user_id"] != user_id):
            return None
        messages = await self.fetchall(
            "SELECT message_json FROM chat_messages WHERE chat_id=? ORDER BY position ASC",
            (chat_id,),
        )
        chat = dict(row)
        chat["messages"] = [json.loads(m["message_json"]) for m in messages]
        return chat

    async def delete_chat(self, chat_id: str, user_id: Optional[str] = None) -> bool:
        chat = await self.get_chat(chat_id, user_id)
        if chat is None:
            return False
        await self.execute("DELETE FROM chat_messages WHERE chat_id=?", (chat_id,))
        await self.execute("DELETE FROM chats WHERE id=?", (chat_id,))
        return True
