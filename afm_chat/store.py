"""
Key/value byte stores backing conversation and settings persistence.

Usage:
    from afm_chat.store import SqliteByteStore

    store = SqliteByteStore()                  # default ~/.afm_chat path
    store.set("savedChats", b"[]")
    store.get("savedChats")
"""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Protocol, Union, runtime_checkable

__all__ = [
    "DEFAULT_DB_PATH",
    "ByteStore",
    "MemoryByteStore",
    "SqliteByteStore",
]

_DEFAULT_DATA_DIR = Path.home() / ".afm_chat"
DEFAULT_DB_PATH = _DEFAULT_DATA_DIR / "store.sqlite3"


@runtime_checkable
class ByteStore(Protocol):
    """Structural interface for a flat key -> bytes store."""

    def get(self, key: str) -> bytes | None: ...

    def set(self, key: str, value: bytes) -> None: ...

    def remove(self, key: str) -> None: ...

    def all_keys(self) -> set[str]: ...


class MemoryByteStore:
    """A dict-backed store for tests and throwaway sessions."""

    def __init__(self, initial: dict[str, bytes] | None = None) -> None:
        self._data: dict[str, bytes] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> bytes | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(value)

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def all_keys(self) -> set[str]:
        with self._lock:
            return set(self._data)

    def __repr__(self) -> str:
        return f"MemoryByteStore(keys={len(self._data)})"


class SqliteByteStore:
    """
    A thread-safe sqlite3 key/value store.

    Parameters
    ----------
    db_path:
        Path to the sqlite3 database file.  Parent directories are created
        automatically.
    """

    def __init__(self, db_path: Union[str, Path, None] = None) -> None:
        self._db_path = Path(db_path) if db_path is not None else DEFAULT_DB_PATH
        self._lock = threading.Lock()

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
        )
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS kv (
                key   TEXT PRIMARY KEY,
                value BLOB NOT NULL
            )
            """
        )
        self._conn.commit()

    @property
    def path(self) -> Path:
        return self._db_path

    # -- public API ----------------------------------------------------------

    def get(self, key: str) -> bytes | None:
        with self._lock:
            row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return None if row is None else bytes(row[0])

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
                (key, sqlite3.Binary(value)),
            )
            self._conn.commit()

    def remove(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            self._conn.commit()

    def all_keys(self) -> set[str]:
        with self._lock:
            rows = self._conn.execute("SELECT key FROM kv").fetchall()
        return {str(row[0]) for row in rows}

    def close(self) -> None:
        """Close the underlying sqlite3 connection."""
        self._conn.close()

    def __repr__(self) -> str:
        return f"SqliteByteStore(db_path={self._db_path!r})"
