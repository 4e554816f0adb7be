"""Durable string key-value stores backing the vehicle cache."""
import logging
import sqlite3
from pathlib import Path
from typing import List, Optional, Protocol

from cachetools import Cache

from imoto.config import Settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the underlying store cannot complete an operation."""


class StorageFullError(StorageError):
    """Raised when a write would exceed the store's capacity."""


class KeyValueStore(Protocol):
    """Synchronous string-keyed, string-valued storage."""

    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def keys(self) -> List[str]: ...


class _QuotaCache(Cache):
    """cachetools Cache that refuses to make room instead of evicting."""

    def popitem(self):
        raise StorageFullError(
            f"Store quota exceeded ({self.currsize}/{self.maxsize} characters used)"
        )


class MemoryStore:
    """In-process store with a fixed character budget.

    Writes past the budget raise StorageFullError and leave the previous
    value for the key untouched.
    """

    def __init__(self, capacity: int = 10 * 1024 * 1024):
        self._data: _QuotaCache = _QuotaCache(maxsize=capacity, getsizeof=len)

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        previous = self._data.pop(key, None)
        try:
            self._data[key] = value
        except ValueError as e:
            # cachetools rejects single values larger than maxsize outright
            if previous is not None:
                self._data[key] = previous
            raise StorageFullError(f"Value for {key} exceeds store capacity") from e
        except StorageFullError:
            if previous is not None:
                self._data[key] = previous
            raise

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data.keys())

    @property
    def used(self) -> int:
        return self._data.currsize


class SQLiteStore:
    """Persistent store kept in a single sqlite table.

    Args:
        path: Database file, created with its parent directory if missing.
        capacity: Optional limit on the total length of stored values.
    """

    def __init__(self, path, capacity: Optional[int] = None):
        self.path = Path(path)
        self.capacity = capacity
        try:
            if str(self.path) != ":memory:":
                self.path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(
                str(self.path),
                check_same_thread=False,
                isolation_level=None,  # autocommit
            )
            self.conn.execute(
                "CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
            )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open sqlite store at {self.path}: {e}") from e
        logger.info(f"Opened sqlite cache store at {self.path}")

    def get_item(self, key: str) -> Optional[str]:
        try:
            row = self.conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read {key}: {e}") from e
        return row[0] if row else None

    def set_item(self, key: str, value: str) -> None:
        try:
            if self.capacity is not None:
                (used,) = self.conn.execute(
                    "SELECT COALESCE(SUM(LENGTH(value)), 0) FROM kv WHERE key != ?",
                    (key,),
                ).fetchone()
                if used + len(value) > self.capacity:
                    raise StorageFullError(
                        f"Store quota exceeded writing {key} ({used + len(value)}/{self.capacity})"
                    )
            self.conn.execute(
                "INSERT INTO kv (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to write {key}: {e}") from e

    def remove_item(self, key: str) -> None:
        try:
            self.conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        except sqlite3.Error as e:
            raise StorageError(f"Failed to remove {key}: {e}") from e

    def keys(self) -> List[str]:
        try:
            return [row[0] for row in self.conn.execute("SELECT key FROM kv ORDER BY rowid")]
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list keys: {e}") from e

    def close(self) -> None:
        self.conn.close()


def build_store(settings: Settings) -> KeyValueStore:
    """Pick the configured durable store."""
    if settings.cache_db_path:
        return SQLiteStore(settings.cache_db_path, capacity=settings.store_capacity)
    return MemoryStore(capacity=settings.store_capacity)
