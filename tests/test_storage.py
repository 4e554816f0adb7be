from __future__ import annotations

import pytest

from imoto.config import Settings
from imoto.storage import MemoryStore, SQLiteStore, StorageFullError, build_store


def test_memory_store_basic_operations() -> None:
    store = MemoryStore(capacity=100)
    assert store.get_item("a") is None

    store.set_item("a", "1")
    store.set_item("b", "22")
    assert store.get_item("a") == "1"
    assert sorted(store.keys()) == ["a", "b"]

    store.remove_item("a")
    store.remove_item("a")
    assert store.get_item("a") is None
    assert store.keys() == ["b"]


def test_memory_store_refuses_writes_over_capacity_without_evicting() -> None:
    store = MemoryStore(capacity=10)
    store.set_item("a", "x" * 6)

    with pytest.raises(StorageFullError):
        store.set_item("b", "y" * 6)

    assert store.get_item("a") == "x" * 6
    assert store.get_item("b") is None


def test_memory_store_rejects_single_value_larger_than_capacity() -> None:
    store = MemoryStore(capacity=5)
    with pytest.raises(StorageFullError):
        store.set_item("a", "x" * 6)
    assert store.keys() == []


def test_memory_store_keeps_previous_value_when_overwrite_does_not_fit() -> None:
    store = MemoryStore(capacity=10)
    store.set_item("a", "x" * 4)
    store.set_item("b", "y" * 4)

    with pytest.raises(StorageFullError):
        store.set_item("a", "z" * 7)

    assert store.get_item("a") == "x" * 4


def test_memory_store_overwrite_counts_only_new_value() -> None:
    store = MemoryStore(capacity=10)
    store.set_item("a", "x" * 8)
    store.set_item("a", "y" * 9)
    assert store.get_item("a") == "y" * 9
    assert store.used == 9


def test_sqlite_store_persists_between_connections(tmp_path) -> None:
    path = tmp_path / "cache" / "imoto.db"
    store = SQLiteStore(path)
    store.set_item("imoto_vehicles_active", "[]")
    store.set_item("imoto_vehicles_active", "[1]")
    store.close()

    reopened = SQLiteStore(path)
    assert reopened.get_item("imoto_vehicles_active") == "[1]"
    assert reopened.keys() == ["imoto_vehicles_active"]
    reopened.remove_item("imoto_vehicles_active")
    assert reopened.get_item("imoto_vehicles_active") is None
    reopened.close()


def test_sqlite_store_enforces_capacity(tmp_path) -> None:
    store = SQLiteStore(tmp_path / "small.db", capacity=10)
    store.set_item("a", "x" * 8)
    store.set_item("a", "y" * 10)

    with pytest.raises(StorageFullError):
        store.set_item("b", "z")
    store.close()


def test_build_store_picks_sqlite_when_path_configured(tmp_path) -> None:
    assert isinstance(build_store(Settings(cache_db_path="")), MemoryStore)

    store = build_store(Settings(cache_db_path=str(tmp_path / "kv.db")))
    assert isinstance(store, SQLiteStore)
    store.close()
