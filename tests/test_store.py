from __future__ import annotations

import asyncio
import importlib

import pytest

from skill_mastery.store import MemoryStore, SQLiteStore


def test_memory_store_returns_default_for_missing_key():
    store = MemoryStore()
    assert asyncio.run(store.get("missing")) is None
    assert asyncio.run(store.get("missing", {})) == {}


def test_memory_store_values_are_not_aliased():
    store = MemoryStore()
    value = {"a": [1, 2]}
    asyncio.run(store.set("key", value))
    value["a"].append(3)

    loaded = asyncio.run(store.get("key"))
    assert loaded == {"a": [1, 2]}
    loaded["a"].append(4)
    assert asyncio.run(store.get("key")) == {"a": [1, 2]}


def test_memory_store_rejects_unserialisable_values():
    store = MemoryStore()
    with pytest.raises(TypeError):
        asyncio.run(store.set("key", {"when": object()}))


def test_memory_store_initial_data_and_keys():
    store = MemoryStore({"b": 1, "a": 2})
    assert store.keys() == ["a", "b"]
    assert store.snapshot() == {"a": 2, "b": 1}


def test_sqlite_store_round_trip(tmp_path):
    store = SQLiteStore(tmp_path / "progress.db")
    store.init()

    asyncio.run(store.set("bkt_mastery", {"default:a": {"probability": 0.4}}))
    asyncio.run(store.set("bkt_mastery", {"default:a": {"probability": 0.6}}))

    assert asyncio.run(store.get("bkt_mastery")) == {"default:a": {"probability": 0.6}}
    assert asyncio.run(store.get("missing", [])) == []
    assert store.keys() == ["bkt_mastery"]


def test_sqlite_store_survives_reopen(tmp_path):
    path = tmp_path / "nested" / "progress.db"
    first = SQLiteStore(path)
    first.init()
    asyncio.run(first.set("feedback_history", [{"outcome": "passed"}]))

    second = SQLiteStore(path)
    second.init()
    assert asyncio.run(second.get("feedback_history")) == [{"outcome": "passed"}]


def test_sqlite_store_path_from_environment(tmp_path, monkeypatch):
    db_path = tmp_path / "env.db"
    monkeypatch.setenv("SKILL_MASTERY_DB_PATH", str(db_path))

    import skill_mastery.store as store_module

    store_module = importlib.reload(store_module)
    store = store_module.SQLiteStore()
    store.init()
    assert store.path == db_path
    assert db_path.exists()
