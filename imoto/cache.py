"""Stale-while-revalidate cache for vehicle listings.

Entries are JSON documents kept in a string key-value store. Each primary
key ``k`` has a companion ``k_timestamp`` key holding the write time in epoch
milliseconds, so age and staleness checks never have to decode the payload.
"""
import asyncio
import logging
import math
import time
from typing import Any, Awaitable, Callable, Optional, Sequence, Set

from pydantic import BaseModel, ConfigDict, ValidationError

from imoto.config import Settings, settings as default_settings
from imoto.storage import KeyValueStore

logger = logging.getLogger(__name__)

TIMESTAMP_SUFFIX = "_timestamp"


def now_ms() -> int:
    return int(time.time() * 1000)


class CacheEntry(BaseModel):
    """Unit of storage: one payload plus its metadata."""

    data: Any
    timestamp: int
    version: str
    compressed: bool = False

    model_config = ConfigDict(extra="forbid", strict=True)


class CacheStats(BaseModel):
    total_entries: int = 0
    total_size: int = 0
    oldest_entry: Optional[str] = None
    oldest_age: int = 0


def encode_entry(entry: CacheEntry) -> str:
    return entry.model_dump_json()


def decode_entry(raw: str) -> Optional[CacheEntry]:
    """Decode a stored value, returning None for anything malformed."""
    try:
        return CacheEntry.model_validate_json(raw)
    except ValidationError as e:
        logger.warning(f"[Cache] Discarding malformed entry: {e.error_count()} validation error(s)")
        return None


class CacheKeys:
    """Deterministic cache keys for each entity kind."""

    def __init__(self, namespace: str = "imoto"):
        self.namespace = namespace

    def vehicles(self, status: str = "active") -> str:
        return f"{self.namespace}_vehicles_{status}"

    def vehicle_details(self, vehicle_id: str) -> str:
        return f"{self.namespace}_vehicle_details_{vehicle_id}"

    def user_vehicles(self, user_id: str) -> str:
        return f"{self.namespace}_user_vehicles_{user_id}"

    def saved_vehicles(self, user_id: str) -> str:
        return f"{self.namespace}_saved_vehicles_{user_id}"


class CacheManager:
    """Fault-isolated cache over a KeyValueStore.

    No public method raises: failures are logged and turned into a miss
    (``get``), a rejected write (``set``) or a no-op.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        namespace: str = "imoto",
        legacy_prefixes: Sequence[str] = ("cached_",),
        version: str = "1.0",
        default_ttl: int = 5 * 60 * 1000,
        stale_threshold: int = 2 * 60 * 1000,
        max_entry_size: int = 5 * 1024 * 1024,
        eviction_batch_size: int = 5,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.keys = CacheKeys(namespace)
        self.namespace = namespace
        self.legacy_prefixes = tuple(legacy_prefixes)
        self.version = version
        self.default_ttl = default_ttl
        self.stale_threshold = stale_threshold
        self.max_entry_size = max_entry_size
        self.eviction_batch_size = eviction_batch_size
        self.clock = clock
        # keys whose last write was refused by the store
        self._rejected: Set[str] = set()

    @classmethod
    def from_settings(cls, store: KeyValueStore, settings: Settings = default_settings) -> "CacheManager":
        return cls(
            store,
            namespace=settings.cache_namespace,
            legacy_prefixes=settings.cache_legacy_prefixes,
            version=settings.cache_version,
            default_ttl=settings.cache_duration_ms,
            stale_threshold=settings.background_refresh_threshold_ms,
            max_entry_size=settings.max_cache_size,
            eviction_batch_size=settings.eviction_batch_size,
        )

    def set(self, key: str, data: Any, *, set_timestamp: bool = True) -> bool:
        """Store ``data`` under ``key`` with a fresh timestamp.

        Returns False without writing anything when the serialized entry is
        larger than ``max_entry_size``. When the store itself refuses the
        write, nothing of the entry is kept, the oldest entries are evicted
        and False is returned so the caller may retry.
        """
        try:
            timestamp = self.clock()
            entry = CacheEntry(data=data, timestamp=timestamp, version=self.version, compressed=False)
            serialized = encode_entry(entry)
        except Exception as e:
            logger.error(f"[Cache] Could not serialize {key}: {e}")
            return False

        size = len(serialized)
        if size > self.max_entry_size:
            logger.warning(f"[Cache] Size exceeds limit for {key}: {size / 1024 / 1024:.2f}MB")
            return False

        written = False
        try:
            self.store.set_item(key, serialized)
            written = True
            if set_timestamp:
                self.store.set_item(f"{key}{TIMESTAMP_SUFFIX}", str(timestamp))
        except Exception as e:
            if written:
                # the entry and its side key are kept together or not at all
                self.delete(key)
            if key in self._rejected:
                logger.debug(f"[Cache] Write still rejected for {key}: {e}")
            else:
                self._rejected.add(key)
                logger.error(f"[Cache] Set error for {key}: {e}")
            self._clear_oldest(self.eviction_batch_size)
            return False

        self._rejected.discard(key)
        logger.debug(f"[Cache] Set {key} ({size / 1024:.2f}KB)")
        return True

    def get(self, key: str, max_age: Optional[float] = None, *, purge: bool = True) -> Any:
        """Return the cached payload for ``key`` or None.

        ``max_age`` defaults to the configured TTL; ``math.inf`` disables
        expiry. An expired entry is deleted unless ``purge`` is False.
        """
        if max_age is None:
            max_age = self.default_ttl
        try:
            raw = self.store.get_item(key)
            if raw is None:
                logger.debug(f"[Cache] Miss: {key}")
                return None

            entry = decode_entry(raw)
            if entry is None:
                self.delete(key)
                return None

            if entry.version != self.version:
                logger.warning(f"[Cache] Version mismatch for {key}: {entry.version} != {self.version}")
                self.delete(key)
                return None

            age = self.clock() - entry.timestamp
            if age > max_age:
                logger.info(f"[Cache] Expired: {key} ({age / 1000 / 60:.1f}min old)")
                if purge:
                    self.delete(key)
                return None

            logger.info(f"[Cache] Hit: {key} ({age / 1000:.1f}s old)")
            return entry.data
        except Exception as e:
            logger.error(f"[Cache] Get error for {key}: {e}")
            self.delete(key)
            return None

    def _read_timestamp(self, key: str) -> Optional[int]:
        raw = self.store.get_item(f"{key}{TIMESTAMP_SUFFIX}")
        if raw is None:
            return None
        return int(raw)

    def is_stale(self, key: str, stale_threshold: Optional[float] = None) -> bool:
        """True when ``key`` has no timestamp or is older than the threshold."""
        if stale_threshold is None:
            stale_threshold = self.stale_threshold
        try:
            timestamp = self._read_timestamp(key)
        except Exception:
            return True
        if timestamp is None:
            return True
        return self.clock() - timestamp > stale_threshold

    def get_age(self, key: str) -> float:
        """Milliseconds since ``key`` was written, ``math.inf`` if unknown."""
        try:
            timestamp = self._read_timestamp(key)
        except Exception:
            return math.inf
        if timestamp is None:
            return math.inf
        return self.clock() - timestamp

    def delete(self, key: str) -> None:
        try:
            self.store.remove_item(key)
            self.store.remove_item(f"{key}{TIMESTAMP_SUFFIX}")
            logger.debug(f"[Cache] Deleted: {key}")
        except Exception as e:
            logger.error(f"[Cache] Delete error for {key}: {e}")

    def _owns(self, key: str) -> bool:
        return key.startswith(f"{self.namespace}_") or key.startswith(self.legacy_prefixes)

    def clear_all(self) -> None:
        """Remove every namespaced or legacy-prefixed key."""
        try:
            owned = [key for key in self.store.keys() if self._owns(key)]
        except Exception as e:
            logger.error(f"[Cache] Clear all error: {e}")
            return
        removed = 0
        for key in owned:
            try:
                self.store.remove_item(key)
                removed += 1
            except Exception as e:
                logger.error(f"[Cache] Could not remove {key}: {e}")
        self._rejected.clear()
        logger.info(f"[Cache] Cleared {removed} entries")

    def clear_user_cache(self, user_id: str) -> None:
        self.delete(self.keys.user_vehicles(user_id))
        self.delete(self.keys.saved_vehicles(user_id))
        logger.info(f"[Cache] Cleared user cache for: {user_id}")

    def _clear_oldest(self, count: Optional[int] = None) -> int:
        """Evict the ``count`` oldest entries by side-key timestamp.

        Equal timestamps are ordered by key name.
        """
        if count is None:
            count = self.eviction_batch_size
        try:
            entries = []
            for side_key in self.store.keys():
                if not side_key.endswith(TIMESTAMP_SUFFIX) or not self._owns(side_key):
                    continue
                try:
                    timestamp = int(self.store.get_item(side_key) or 0)
                except ValueError:
                    timestamp = 0
                entries.append((timestamp, side_key[: -len(TIMESTAMP_SUFFIX)]))
            entries.sort()
            oldest = entries[:count]
        except Exception as e:
            logger.error(f"[Cache] Clear oldest error: {e}")
            return 0

        for _, key in oldest:
            self.delete(key)
        logger.info(f"[Cache] Cleared {len(oldest)} oldest entries")
        return len(oldest)

    def get_stats(self) -> CacheStats:
        try:
            now = self.clock()
            primary = [
                key for key in self.store.keys()
                if key.startswith(f"{self.namespace}_") and not key.endswith(TIMESTAMP_SUFFIX)
            ]
            total_size = 0
            oldest_timestamp = now
            oldest_entry = None
            for key in primary:
                value = self.store.get_item(key)
                if not value:
                    continue
                total_size += len(value)
                try:
                    timestamp = self._read_timestamp(key) or 0
                except ValueError:
                    timestamp = 0
                if timestamp and timestamp < oldest_timestamp:
                    oldest_timestamp = timestamp
                    oldest_entry = key
            return CacheStats(
                total_entries=len(primary),
                total_size=total_size,
                oldest_entry=oldest_entry,
                oldest_age=now - oldest_timestamp if oldest_entry else 0,
            )
        except Exception as e:
            logger.error(f"[Cache] Get stats error: {e}")
            return CacheStats()


class BackgroundRefresher:
    """Runs at most one refresh task per cache key.

    A key is marked in progress before its task starts and unmarked in the
    task's ``finally`` block, whatever the outcome.
    """

    def __init__(self):
        self._in_progress: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    def in_progress(self, key: str) -> bool:
        return key in self._in_progress

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, key: str, factory: Callable[[], Awaitable[Any]]) -> bool:
        """Start a refresh for ``key`` unless one is already running."""
        if key in self._in_progress:
            logger.debug(f"[Refresh] Already refreshing {key}")
            return False
        self._in_progress.add(key)
        try:
            task = asyncio.get_running_loop().create_task(self._run(key, factory))
        except Exception:
            self._in_progress.discard(key)
            raise
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _run(self, key: str, factory: Callable[[], Awaitable[Any]]) -> None:
        try:
            await factory()
            logger.info(f"[Refresh] Background refresh complete for {key}")
        except Exception as e:
            logger.error(f"[Refresh] Background refresh failed for {key}: {e}")
        finally:
            self._in_progress.discard(key)

    async def drain(self) -> None:
        """Wait for every outstanding refresh to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def reset(self) -> None:
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()
        self._in_progress.clear()

