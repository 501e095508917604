"""
Ephemeral in-process cache for derived, read-heavy data (computed reports,
filtered menus). Nothing stored here is durable; the local store is the
source of truth.
"""
import asyncio
import fnmatch
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 5 * 60
DEFAULT_MAX_SIZE = 1000


@dataclass
class CacheEntry:
    data: Any
    timestamp: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


class EphemeralCache:
    """In-memory cache with TTL support and size limit.

    When the cache is full and a new key is inserted, the single entry with
    the oldest insertion timestamp is evicted. Expired entries are dropped on
    read and by ``cleanup()``.
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        max_size: int = DEFAULT_MAX_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.default_ttl = default_ttl
        self.max_size = max_size
        self._clock = clock
        self._cache: Dict[str, CacheEntry] = {}
        self._cleanup_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._cache)

    def _live_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            self._cache.pop(key, None)
            return None
        return entry

    def get(self, key: str, default: Any = None) -> Any:
        """Get value from cache if not expired."""
        entry = self._live_entry(key)
        if entry is None:
            return default
        return entry.data

    def has(self, key: str) -> bool:
        return self._live_entry(key) is not None

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Set value in cache with TTL (seconds)."""
        if key not in self._cache and len(self._cache) >= self.max_size:
            self._evict_oldest()
        self._cache[key] = CacheEntry(
            data=value,
            timestamp=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )

    def delete(self, key: str) -> None:
        self._cache.pop(key, None)

    def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob-like pattern, e.g. ``orders:*``."""
        keys_to_delete = [k for k in list(self._cache) if fnmatch.fnmatchcase(k, pattern)]
        for key in keys_to_delete:
            self._cache.pop(key, None)
        return len(keys_to_delete)

    def clear(self) -> None:
        self._cache.clear()

    def cleanup(self) -> int:
        """Remove expired entries. Returns the number removed."""
        now = self._clock()
        expired = [k for k, entry in list(self._cache.items()) if entry.expired(now)]
        for key in expired:
            self._cache.pop(key, None)
        if expired:
            logger.debug(f"Cache cleanup removed {len(expired)} expired entries")
        return len(expired)

    def _evict_oldest(self) -> None:
        if not self._cache:
            return
        oldest_key = min(self._cache, key=lambda k: self._cache[k].timestamp)
        self._cache.pop(oldest_key, None)

    def stats(self) -> dict:
        """Get cache statistics."""
        now = self._clock()
        valid = sum(1 for entry in list(self._cache.values()) if not entry.expired(now))
        return {
            "total_keys": len(self._cache),
            "valid_keys": valid,
            "expired_keys": len(self._cache) - valid,
            "max_size": self.max_size,
        }

    # ------------------------------------------------------------------
    # Periodic sweep, owned by the runtime
    # ------------------------------------------------------------------

    def start_cleanup(self, interval_seconds: float) -> asyncio.Task:
        if self._cleanup_task and not self._cleanup_task.done():
            return self._cleanup_task
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(interval_seconds))
        return self._cleanup_task

    async def _cleanup_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self.cleanup()

    async def stop_cleanup(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


def make_cache_key(*args, **kwargs) -> str:
    """Generate cache key from arguments."""
    key_data = json.dumps({"args": args, "kwargs": kwargs}, sort_keys=True, default=str)
    return hashlib.md5(key_data.encode()).hexdigest()


# Cache key prefixes for derived data
class CacheKeys:
    REPORTS = "reports"
    MENU = "menu"
    ORDERS = "orders"
    INVENTORY = "inventory"

    @staticmethod
    def for_table(table: str) -> str:
        return f"{table}:*"

    # Tables whose changes make cached reports stale
    REPORT_SOURCES = frozenset({"orders", "order_items", "stock_transactions", "ingredients"})


def invalidate_table(cache: Optional[EphemeralCache], table: str) -> int:
    """Drop derived data cached for ``table``. Returns the number of keys removed."""
    if cache is None:
        return 0
    removed = cache.delete_pattern(CacheKeys.for_table(table))
    if table in CacheKeys.REPORT_SOURCES:
        removed += cache.delete_pattern(f"{CacheKeys.REPORTS}:*")
    return removed
