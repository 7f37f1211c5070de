"""
test_document_store.py — Tests for the per-user JSON document store.

Tests cover:
  - set / get / list / delete round trips on a temporary SQLite database
  - Per-user and per-collection isolation
  - Merge writes and the "id" key never being stored in the payload
  - add() with generated, prefixed ids
  - Change listeners: full snapshot after each write, unsubscribe, async
    callbacks, a failing listener not breaking the write
  - PersistenceError when the database cannot be reached
"""

import asyncio

import pytest

from app.services.document_store import CATALOG, MAIN_CATEGORIES, QUOTES, DocumentStore
from app.services.errors import PersistenceError


def run(coro):
    return asyncio.run(coro)


class TestReadWrite:

    def test_set_then_get(self, store):
        stored = run(store.set("u1", QUOTES, "Q1", {"customerName": "An", "items": [{"name": "Bàn"}]}))
        assert stored["id"] == "Q1"
        fetched = run(store.get("u1", QUOTES, "Q1"))
        assert fetched == {"id": "Q1", "customerName": "An", "items": [{"name": "Bàn"}]}

    def test_missing_document(self, store):
        assert run(store.get("u1", QUOTES, "nope")) is None

    def test_replace_drops_old_fields(self, store):
        run(store.set("u1", QUOTES, "Q1", {"a": 1, "b": 2}))
        run(store.set("u1", QUOTES, "Q1", {"a": 3}))
        assert run(store.get("u1", QUOTES, "Q1")) == {"id": "Q1", "a": 3}

    def test_merge_keeps_other_fields(self, store):
        run(store.set("u1", QUOTES, "Q1", {"status": "draft", "customerName": "An"}))
        run(store.set("u1", QUOTES, "Q1", {"status": "sent"}, merge=True))
        assert run(store.get("u1", QUOTES, "Q1")) == {"id": "Q1", "status": "sent", "customerName": "An"}

    def test_id_key_not_stored_in_payload(self, store):
        run(store.set("u1", QUOTES, "Q1", {"id": "something-else", "x": 1}))
        assert run(store.get("u1", QUOTES, "Q1"))["id"] == "Q1"

    def test_list_ordered_by_id(self, store):
        for doc_id in ("b", "c", "a"):
            run(store.set("u1", CATALOG, doc_id, {"name": doc_id.upper()}))
        assert [d["id"] for d in run(store.list("u1", CATALOG))] == ["a", "b", "c"]

    def test_users_and_collections_are_isolated(self, store):
        run(store.set("u1", CATALOG, "x", {"name": "mine"}))
        run(store.set("u2", CATALOG, "x", {"name": "theirs"}))
        run(store.set("u1", MAIN_CATEGORIES, "x", {"name": "category"}))
        assert run(store.get("u1", CATALOG, "x"))["name"] == "mine"
        assert run(store.get("u2", CATALOG, "x"))["name"] == "theirs"
        assert len(run(store.list("u1", CATALOG))) == 1

    def test_add_generates_prefixed_id(self, store):
        doc = run(store.add("u1", MAIN_CATEGORIES, {"name": "Phòng ngủ"}, prefix="mcat"))
        assert doc["id"].startswith("mcat-")
        assert run(store.get("u1", MAIN_CATEGORIES, doc["id"]))["name"] == "Phòng ngủ"

    def test_delete(self, store):
        run(store.set("u1", QUOTES, "Q1", {}))
        assert run(store.delete("u1", QUOTES, "Q1")) is True
        assert run(store.delete("u1", QUOTES, "Q1")) is False
        assert run(store.get("u1", QUOTES, "Q1")) is None


class TestListeners:

    def test_listener_receives_snapshot(self, store):
        seen = []

        async def scenario():
            store.listen("u1", CATALOG, seen.append)
            await store.set("u1", CATALOG, "a", {"name": "A"})
            await store.set("u1", CATALOG, "b", {"name": "B"})
            await store.delete("u1", CATALOG, "a")

        run(scenario())
        assert [[d["id"] for d in snap] for snap in seen] == [["a"], ["a", "b"], ["b"]]

    def test_other_users_do_not_trigger(self, store):
        seen = []
        store.listen("u1", CATALOG, seen.append)
        run(store.set("u2", CATALOG, "a", {"name": "A"}))
        assert seen == []

    def test_unsubscribe(self, store):
        seen = []
        unsubscribe = store.listen("u1", CATALOG, seen.append)
        run(store.set("u1", CATALOG, "a", {}))
        unsubscribe()
        unsubscribe()
        run(store.set("u1", CATALOG, "b", {}))
        assert len(seen) == 1

    def test_async_listener(self, store):
        seen = []

        async def on_change(docs):
            seen.append(len(docs))

        store.listen("u1", QUOTES, on_change)
        run(store.set("u1", QUOTES, "Q1", {}))
        assert seen == [1]

    def test_failing_listener_does_not_break_write(self, store):
        def broken(docs):
            raise RuntimeError("listener bug")

        store.listen("u1", QUOTES, broken)
        run(store.set("u1", QUOTES, "Q1", {"ok": True}))
        assert run(store.get("u1", QUOTES, "Q1"))["ok"] is True


class TestFailures:

    def test_unreachable_database_raises_persistence_error(self, tmp_path):
        from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
        from sqlalchemy.pool import NullPool

        # A directory path can't be opened as a database file
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}", poolclass=NullPool)
        broken = DocumentStore(async_sessionmaker(engine))
        with pytest.raises(PersistenceError) as exc_info:
            run(broken.list("u1", QUOTES))
        assert "list quotes" in str(exc_info.value)
