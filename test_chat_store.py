#!/usr/bin/env python3
"""
Tests for session-scoped persistence (ChatStore) over both replica backends.
"""

import asyncio
import os
import tempfile

import pytest

from chatsync.history.chat_store import ChatStore, new_chat_id
from chatsync.history.factory import create_store
from chatsync.history.models import (
    ChatMessageData,
    SessionConfig,
    StorageKeys,
    chat_data_key,
    infer_chat_timestamp_ms,
    session_history_key,
)
from chatsync.history.sqlite_store import SQLiteStore
from chatsync.history.store import InMemoryStore
from chatsync.history.version_clock import is_version_id


def message(chat_id, role, content, ts):
    return ChatMessageData(chatID=chat_id, role=role, content=content, timestamp=ts)


async def seed(store: ChatStore, turns: int):
    for i in range(turns):
        chat_id = f"chat-{1000 + i}-x"
        await store.save_message(message(chat_id, "user", f"question {i}", 1000 + i))
        await store.save_message(message(chat_id, "assistant", f"answer {i}", 1000 + i))


def test_new_chat_id_embeds_time():
    chat_id = new_chat_id()
    assert chat_id.startswith("v2@")
    assert infer_chat_timestamp_ms(chat_id) > 0


def test_save_message_upserts_one_history_row():
    async def run():
        backend = InMemoryStore()
        store = ChatStore(backend, "default")

        await store.save_message(message("chat-1-a", "user", "hi", 1))
        await store.save_message(message("chat-1-a", "assistant", "", 2))
        await store.save_message(message("chat-1-a", "assistant", "hello there", 3))

        history = await backend.get(session_history_key("default"))
        assert [(h["chatID"], h["role"]) for h in history] == [
            ("chat-1-a", "user"),
            ("chat-1-a", "assistant"),
        ]
        assert history[1]["content"] == "hello there"

        stored = await store.get_message("chat-1-a", "assistant")
        assert stored.content == "hello there"
        assert await store.get_message("chat-1-a", "missing") is None

    asyncio.run(run())


def test_history_row_content_is_truncated():
    async def run():
        backend = InMemoryStore()
        store = ChatStore(backend, "s")
        await store.save_message(message("c", "user", "x" * 250, 1))
        history = await backend.get(session_history_key("s"))
        assert len(history[0]["content"]) == 100
        assert len((await store.get_message("c", "user")).content) == 250

    asyncio.run(run())


def test_only_user_and_assistant_are_persisted():
    async def run():
        store = ChatStore(InMemoryStore(), "default")
        with pytest.raises(ValueError):
            await store.save_message(message("c", "system", "nope", 1))

    asyncio.run(run())


def test_load_messages_orders_user_before_assistant():
    async def run():
        backend = InMemoryStore()
        store = ChatStore(backend, "default")
        await store.save_message(message("chat-2-b", "assistant", "a2", 2))
        await store.save_message(message("chat-1-a", "user", "q1", 1))
        await store.save_message(message("chat-2-b", "user", "q2", 2))
        await store.save_message(message("chat-1-a", "assistant", "a1", 1))

        loaded = await store.load_messages()
        assert [(m.chatID, m.role) for m in loaded] == [
            ("chat-2-b", "user"),
            ("chat-2-b", "assistant"),
            ("chat-1-a", "user"),
            ("chat-1-a", "assistant"),
        ]

    asyncio.run(run())


def test_recent_context_window():
    async def run():
        store = ChatStore(InMemoryStore(), "default")
        await seed(store, 5)

        context = await store.recent_context(2)
        assert [m.content for m in context] == ["question 3", "answer 3", "question 4", "answer 4"]

        before = await store.recent_context(1, before_chat_id="chat-1003-x")
        assert [m.content for m in before] == ["question 2", "answer 2"]

        assert await store.recent_context(0) == []

    asyncio.run(run())


def test_delete_message_records_marker():
    async def run():
        backend = InMemoryStore()
        store = ChatStore(backend, "default")
        await seed(store, 2)

        await store.delete_message("chat-1000-x")

        assert await backend.get(chat_data_key("chat-1000-x", "user")) is None
        assert await backend.get(chat_data_key("chat-1000-x", "assistant")) is None
        history = await backend.get(session_history_key("default"))
        assert {h["chatID"] for h in history} == {"chat-1001-x"}

        markers = await backend.get(StorageKeys.DELETED_CHAT_IDS)
        assert [m["chat_id"] for m in markers] == ["chat-1000-x"]
        assert is_version_id(markers[0]["deleted_version"])

    asyncio.run(run())


def test_deleted_chat_is_not_saved_again():
    async def run():
        backend = InMemoryStore()
        store = ChatStore(backend, "default")
        await seed(store, 1)
        await store.delete_message("chat-1000-x")

        saved = await store.save_message(message("chat-1000-x", "assistant", "late reply", 1005))

        assert saved is False
        assert await backend.get(chat_data_key("chat-1000-x", "assistant")) is None
        assert await backend.get(session_history_key("default")) == []
        assert await store.save_message(message("chat-2000-y", "user", "fresh", 2000)) is True

    asyncio.run(run())


def test_unreadable_payload_is_skipped_on_load():
    async def run():
        backend = InMemoryStore({
            chat_data_key("chat-1-a", "user"): {"chatID": "chat-1-a", "role": "user", "timestamp": "x"},
            chat_data_key("chat-2-b", "user"): {"chatID": "chat-2-b", "role": "user", "content": "ok"},
            session_history_key("default"): [
                {"chatID": "chat-1-a", "role": "user"},
                {"chatID": "chat-2-b", "role": "user"},
            ],
        })
        store = ChatStore(backend, "default")

        assert await store.get_message("chat-1-a", "user") is None
        assert [m.content for m in await store.load_messages()] == ["ok"]

    asyncio.run(run())


def test_delete_payload_keeps_other_role():
    async def run():
        backend = InMemoryStore()
        store = ChatStore(backend, "default")
        await seed(store, 1)

        await store.delete_payload("chat-1000-x", "assistant")

        assert await store.get_message("chat-1000-x", "user") is not None
        assert await store.get_message("chat-1000-x", "assistant") is None
        history = await backend.get(session_history_key("default"))
        assert [h["role"] for h in history] == ["user"]
        assert await backend.get(StorageKeys.DELETED_CHAT_IDS) is None

    asyncio.run(run())


def test_clear_messages():
    async def run():
        backend = InMemoryStore()
        store = ChatStore(backend, "default")
        other = ChatStore(backend, "other")
        await seed(store, 3)
        await other.save_message(message("chat-9-z", "user", "elsewhere", 9))

        await store.clear_messages()

        assert await store.load_messages() == []
        assert len(await backend.get(StorageKeys.DELETED_CHAT_IDS)) == 3
        assert [m.content for m in await other.load_messages()] == ["elsewhere"]

    asyncio.run(run())


def test_session_config_roundtrip():
    async def run():
        backend = InMemoryStore()
        store = ChatStore(backend, 7)

        defaults = {"system_prompt": "Be brief.", "n_contexts": 3}
        config = await store.load_session_config(defaults)
        assert config.id == "7"
        assert config.system_prompt == "Be brief."
        assert config.n_contexts == 3
        assert config.updated_at == 0

        saved = await store.save_session_config(config.model_copy(update={"temperature": 0.2}))
        assert saved.updated_at > 0
        stored = await backend.get(store.config_key)
        assert stored["temperature"] == 0.2
        assert store.config_key == "chat_user_config_7"

        reloaded = await store.load_session_config(defaults)
        assert reloaded.temperature == 0.2
        assert reloaded.n_contexts == 3

    asyncio.run(run())


def test_invalid_stored_session_config_falls_back():
    async def run():
        backend = InMemoryStore({"chat_user_config_s": {"n_contexts": -4}})
        config = await ChatStore(backend, "s").load_session_config({"system_prompt": "x"})
        assert isinstance(config, SessionConfig)
        assert config.n_contexts == 6
        assert config.system_prompt == "x"

    asyncio.run(run())


def test_in_memory_store_listeners_and_copies():
    async def run():
        store = InMemoryStore()
        events = []

        def listener(key, op, old, new):
            events.append((key, op, old, new))

        def broken(key, op, old, new):
            raise RuntimeError("listener bug")

        store.add_listener(listener)
        store.add_listener(broken)

        value = {"a": [1]}
        await store.set("k", value)
        value["a"].append(2)
        assert await store.get("k") == {"a": [1]}

        await store.set("k", {"a": [3]})
        await store.delete("k")
        await store.delete("k")

        assert events == [
            ("k", "set", None, {"a": [1, 2]}),
            ("k", "set", {"a": [1]}, {"a": [3]}),
            ("k", "delete", {"a": [3]}, None),
        ]

        store.remove_listener(listener)
        await store.set("k2", 1)
        assert len(events) == 3

    asyncio.run(run())


def test_sqlite_store_persists_across_instances():
    async def run(db_path):
        events = []
        store = SQLiteStore(db_path)
        store.add_listener(lambda key, op, old, new: events.append((key, op)))

        chats = ChatStore(store, "default")
        await seed(chats, 2)
        await chats.delete_message("chat-1000-x")

        reopened = ChatStore(SQLiteStore(db_path), "default")
        loaded = await reopened.load_messages()
        assert [(m.chatID, m.role, m.content) for m in loaded] == [
            ("chat-1001-x", "user", "question 1"),
            ("chat-1001-x", "assistant", "answer 1"),
        ]
        assert StorageKeys.DELETED_CHAT_IDS in await reopened.store.list()
        assert (chat_data_key("chat-1000-x", "user"), "delete") in events

        await reopened.store.delete("never-existed")

    with tempfile.TemporaryDirectory() as tmp:
        asyncio.run(run(os.path.join(tmp, "replica.db")))


def test_create_store():
    assert isinstance(create_store({"type": "memory"}), InMemoryStore)

    store = create_store({"type": "sqlite", "path": "somewhere.db"})
    assert isinstance(store, SQLiteStore)
    assert store.db_path == "somewhere.db"

    with pytest.raises(ValueError):
        create_store({"type": "redis"})
