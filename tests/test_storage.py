from __future__ import annotations

import json

import pytest

from personalize.errors import StorageLimitError
from personalize.storage import JsonFileStore, MemoryKeyValueStore, safe_get, safe_set


def test_memory_store_round_trips_json_values():
    store = MemoryKeyValueStore()
    store.set("profile", {"cart": ["a", "b"], "score": 1.5})
    assert store.get("profile") == {"cart": ["a", "b"], "score": 1.5}
    store.delete("profile")
    assert store.get("profile") is None


def test_memory_store_enforces_total_size():
    store = MemoryKeyValueStore(max_bytes=64)
    store.set("a", "x" * 30)
    with pytest.raises(StorageLimitError) as excinfo:
        store.set("b", "y" * 40)
    assert excinfo.value.key == "b"
    assert safe_set(store, "b", "y" * 40) is False
    assert store.get("a") == "x" * 30


def test_file_store_persists_between_instances(tmp_path):
    path = tmp_path / "state" / "store.json"
    JsonFileStore(path).set("ab_assignments", {"s1": {"test": "control"}})

    reopened = JsonFileStore(path)
    assert reopened.get("ab_assignments") == {"s1": {"test": "control"}}
    assert json.loads(path.read_text(encoding="utf-8"))["ab_assignments"]["s1"]["test"] == "control"


def test_corrupt_file_reads_as_missing(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("{not json", encoding="utf-8")
    store = JsonFileStore(path)

    assert store.get("profile") is None
    assert safe_get(store, "profile", {}) == {}

    store.set("profile", {"ok": True})
    assert store.get("profile") == {"ok": True}


def test_file_store_limit_names_the_key(tmp_path):
    store = JsonFileStore(tmp_path / "store.json", max_bytes=32)
    with pytest.raises(StorageLimitError) as excinfo:
        store.set("profile", "z" * 100)
    assert excinfo.value.key == "profile"
    assert store.get("profile") is None


def test_safe_helpers_swallow_backend_failures():
    class Broken:
        def get(self, key):
            raise OSError("disk gone")

        def set(self, key, value):
            raise OSError("disk gone")

        def delete(self, key):
            raise OSError("disk gone")

    assert safe_get(Broken(), "profile", "default") == "default"
    assert safe_set(Broken(), "profile", {}) is False
