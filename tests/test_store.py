"""
Tests for afm_chat.store: key/value byte stores.

Covers:
  - get / set / remove / all_keys on both stores
  - Automatic directory creation
  - Values surviving a reopen of the sqlite3 file
  - Thread safety under concurrent writes
"""

import threading

import pytest

from afm_chat.store import ByteStore, MemoryByteStore, SqliteByteStore


@pytest.fixture(params=["memory", "sqlite"])
def byte_store(request, tmp_path):
    if request.param == "memory":
        yield MemoryByteStore()
    else:
        store = SqliteByteStore(tmp_path / "store.sqlite3")
        yield store
        store.close()


class TestByteStores:
    def test_conforms_to_protocol(self, byte_store):
        assert isinstance(byte_store, ByteStore)

    def test_missing_key(self, byte_store):
        assert byte_store.get("nope") is None

    def test_set_get_overwrite(self, byte_store):
        byte_store.set("k", b"one")
        byte_store.set("k", b"two")
        assert byte_store.get("k") == b"two"

    def test_remove(self, byte_store):
        byte_store.set("k", b"v")
        byte_store.remove("k")
        byte_store.remove("never-existed")
        assert byte_store.get("k") is None

    def test_all_keys(self, byte_store):
        byte_store.set("a", b"1")
        byte_store.set("b", b"2")
        assert byte_store.all_keys() == {"a", "b"}

    def test_binary_values(self, byte_store):
        payload = bytes(range(256))
        byte_store.set("blob", payload)
        assert byte_store.get("blob") == payload

    def test_concurrent_writes(self, byte_store):
        def writer(prefix):
            for i in range(50):
                byte_store.set(f"{prefix}-{i}", str(i).encode())

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(byte_store.all_keys()) == 200


class TestSqliteByteStore:
    def test_creates_parent_directories(self, tmp_path):
        path = tmp_path / "nested" / "deeper" / "store.sqlite3"
        store = SqliteByteStore(path)
        try:
            assert path.parent.is_dir()
            assert store.path == path
        finally:
            store.close()

    def test_values_survive_reopen(self, tmp_path):
        path = tmp_path / "store.sqlite3"
        first = SqliteByteStore(path)
        first.set("savedChats", b"[]")
        first.close()

        second = SqliteByteStore(path)
        try:
            assert second.get("savedChats") == b"[]"
        finally:
            second.close()

    def test_memory_store_copies_initial_data(self):
        initial = {"k": b"v"}
        store = MemoryByteStore(initial)
        initial["k"] = b"changed"
        assert store.get("k") == b"v"
