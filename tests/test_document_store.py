from __future__ import annotations

import sqlite3

import pytest

from ticket_mirror.storage.document_store import SqliteDocumentStore


def _seed(store: SqliteDocumentStore) -> None:
    store.upsert("tickets", "a", {"n": 1, "state": "1", "group": "g1", "text": "Printer jam"})
    store.upsert("tickets", "b", {"n": 2, "state": "2", "group": "g1", "text": "VPN 50% loss"})
    store.upsert("tickets", "c", {"n": 3, "state": "2", "group": None, "text": "Mail down"})


def test_upsert_replaces_document(store) -> None:
    store.upsert("tickets", "a", {"n": 1})
    store.upsert("tickets", "a", {"n": 2})

    assert store.count("tickets") == 1
    assert store.get("tickets", "a") == {"n": 2}


def test_find_filters(store) -> None:
    _seed(store)

    assert [d["n"] for d in store.find("tickets", {"state": "2"}, sort=[("n", 1)])] == [2, 3]
    assert [d["n"] for d in store.find("tickets", {"group": None})] == [3]
    assert store.count("tickets", {"state": {"$in": ["1", "2"]}}) == 3
    assert store.count("tickets", {"state": {"$in": []}}) == 0
    assert store.count("tickets", {"group": {"$ne": "g1"}}) == 1
    assert store.count("tickets", {"n": {"$gte": 2, "$lt": 3}}) == 1


def test_sort_skip_limit(store) -> None:
    _seed(store)

    docs = store.find("tickets", sort=[("n", -1)], skip=1, limit=1)
    assert [d["n"] for d in docs] == [2]
    assert [d["n"] for d in store.find("tickets", sort=[("n", 1)], skip=2)] == [3]


def test_text_search_requires_index(store) -> None:
    _seed(store)
    with pytest.raises(ValueError, match="no text index"):
        store.find("tickets", {"$text": {"$search": "mail"}})

    store.create_index("tickets", [("text", "text")])
    assert [d["n"] for d in store.find("tickets", {"$text": {"$search": "mail"}})] == [3]
    assert [d["n"] for d in store.find("tickets", {"$text": {"$search": "50%"}})] == [2]


def test_unique_index_rejects_duplicates(store) -> None:
    store.create_index("tickets", [("n", 1)], unique=True)
    store.upsert("tickets", "a", {"n": 1})

    with pytest.raises(sqlite3.IntegrityError):
        store.upsert("tickets", "b", {"n": 1})


def test_atomic_rolls_back_every_write(store) -> None:
    store.upsert("tickets", "keep", {"n": 0})

    with pytest.raises(RuntimeError):
        with store.atomic():
            store.upsert("tickets", "a", {"n": 1})
            store.insert("audit", {"event": "x"})
            raise RuntimeError("abort")

    assert store.count("tickets") == 1
    assert store.count("audit") == 0


def test_atomic_commits_on_success(store) -> None:
    with store.atomic():
        store.upsert("tickets", "a", {"n": 1})
        key = store.insert("audit", {"event": "x"})

    assert store.count("tickets") == 1
    assert store.get("audit", key) == {"event": "x"}


def test_invalid_identifiers_are_rejected(store) -> None:
    with pytest.raises(ValueError, match="Invalid collection name"):
        store.upsert('tickets"; DROP TABLE x; --', "a", {})
    with pytest.raises(ValueError, match="Invalid field name"):
        store.find("tickets", {"n') OR 1=1 --": 1})


def test_close_is_idempotent(tmp_path) -> None:
    sqlite_store = SqliteDocumentStore(str(tmp_path / "nested" / "db.sqlite"), wal=False)
    sqlite_store.close()
    sqlite_store.close()
