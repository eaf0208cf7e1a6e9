import pytest

from ahamchat.db import Database
from ahamchat.errors import PersistenceError


@pytest.mark.asyncio
async def test_save_and_load_chat(tmp_path):
    db = Database(str(tmp_path / "chat.db"))
    await db.init()
    messages = [
        {"id": "u1", "role": "user", "content": "hi"},
        {"id": "a1", "role": "assistant", "content": "hello"},
        {"id": "d1", "role": "data", "content": {"type": "reasoning", "data": {"time": 3}}},
    ]
    await db.save_chat("chat-1", "user-1", "hi", messages)
    chat = await db.get_chat("chat-1", "user-1")
    assert chat["title"] == "hi"
    assert chat["messages"] == messages

    # Saving again replaces the transcript instead of appending.
    await db.save_chat("chat-1", "user-1", "hi", messages + [{"id": "u2", "role": "user", "content": "more"}])
    chat = await db.get_chat("chat-1")
    assert len(chat["messages"]) == 4
    assert chat["title"] == "hi"


@pytest.mark.asyncio
async def test_chats_are_scoped_to_user(tmp_path):
    db = Database(str(tmp_path / "chat.db"))
    await db.init()
    await db.save_chat("chat-a", "alice", "A", [{"id": "1", "role": "user", "content": "a"}])
    await db.save_chat("chat-b", "bob", "B", [{"id": "2", "role": "user", "content": "b"}])

    assert [c["id"] for c in await db.list_chats("alice")] == ["chat-a"]
    assert await db.get_chat("chat-b", "alice") is None
    assert await db.delete_chat("chat-b", "alice") is False
    assert await db.delete_chat("chat-b", "bob") is True
    assert await db.get_chat("chat-b") is None
    row = await db.fetchone("SELECT COUNT(*) AS cnt FROM chat_messages WHERE chat_id=?", ("chat-b",))
    assert row["cnt"] == 0


@pytest.mark.asyncio
async def test_save_chat_refuses_to_overwrite_another_users_chat(tmp_path):
    db = Database(str(tmp_path / "chat.db"))
    await db.init()
    await db.save_chat("shared", "alice", "A", [{"id": "1", "role": "user", "content": "alice text"}])

    with pytest.raises(PersistenceError):
        await db.save_chat("shared", "bob", "B", [{"id": "2", "role": "user", "content": "bob text"}])

    chat = await db.get_chat("shared", "alice")
    assert chat["user_id"] == "alice"
    assert chat["title"] == "A"
    assert [m["content"] for m in chat["messages"]] == ["alice text"]
    assert await db.list_chats("bob") == []

    # The owner can still update it.
    await db.save_chat("shared", "alice", "A", [{"id": "3", "role": "user", "content": "again"}])
    assert [m["content"] for m in (await db.get_chat("shared"))["messages"]] == ["again"]
