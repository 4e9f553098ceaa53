from __future__ import annotations

from pathlib import Path

import pytest

from errors import StorageQuotaError
from storage import InMemoryStore, JsonFileStore, occupancy


def test_occupancy_counts_keys_and_values() -> None:
    assert occupancy([("ab", "cde"), ("f", "")]) == 6
    assert occupancy([]) == 0


def test_memory_store_basic_operations() -> None:
    store = InMemoryStore(quota=100)
    store.set("a", "1")
    store.set("a", "22")

    assert store.get("a") == "22"
    assert list(store.items()) == [("a", "22")]

    store.remove("a")
    store.remove("a")
    assert store.get("a") is None


def test_memory_store_enforces_quota() -> None:
    store = InMemoryStore(quota=15, initial={"other": "12345"})

    with pytest.raises(StorageQuotaError):
        store.set("k", "12345")
    assert store.get("k") is None

    store.set("k", "1234")
    assert occupancy(store.items()) == 15


def test_memory_store_replacing_value_frees_old_space() -> None:
    store = InMemoryStore(quota=10)
    store.set("k", "123456789")
    store.set("k", "987654321")
    assert store.get("k") == "987654321"


def test_file_store_persists_across_instances(tmp_path: Path) -> None:
    path = tmp_path / "storage.json"
    JsonFileStore(path=path).set("history", '{"messages": []}')

    reloaded = JsonFileStore(path=path)
    assert reloaded.get("history") == '{"messages": []}'
    assert dict(reloaded.items()) == {"history": '{"messages": []}'}

    reloaded.remove("history")
    assert JsonFileStore(path=path).get("history") is None


def test_file_store_enforces_quota(tmp_path: Path) -> None:
    store = JsonFileStore(path=tmp_path / "storage.json", quota=8)
    with pytest.raises(StorageQuotaError):
        store.set("key", "too long")
    assert store.get("key") is None


def test_file_store_invalid_json_reads_as_empty(tmp_path: Path) -> None:
    path = tmp_path / "storage.json"
    path.write_text("{invalid", encoding="utf-8")

    store = JsonFileStore(path=path)

    assert store.get("history") is None
    assert list(store.items()) == []
    store.set("history", "x")
    assert store.get("history") == "x"
