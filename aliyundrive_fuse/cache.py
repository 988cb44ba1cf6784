"""
Directory-entry cache keyed by remote path.

Values are either a directory listing (list of Entry) or a single Entry.
Expiry (TTL) and eviction (LRU by capacity) are independent: an entry may be
evicted before its TTL elapses, and an expired entry may still sit in the
dict until it is looked up or pushed out.
"""

import logging
import posixpath
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 1000
DEFAULT_CACHE_TTL = 600


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    inserted_at: float


def normalize_path(path: str) -> str:
    return posixpath.normpath("/" + path.strip("/"))


def parent_of(path: str) -> str:
    return posixpath.dirname(normalize_path(path))


class EntryCache:
    """
    Thread-safe, passive path -> CacheEntry storage.

    The cache never fetches on its own; callers decide when to go to the network.
    """

    def __init__(self, capacity: int = DEFAULT_CACHE_SIZE, ttl: float = DEFAULT_CACHE_TTL,
                 clock: Callable[[], float] = time.time):
        if capacity < 1:
            raise ValueError("cache capacity must be at least 1")
        self.capacity = capacity
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        # Bumped by every invalidation; a put computed before one is dropped
        self._generation = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _is_fresh(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.inserted_at < self.ttl

    def get(self, path: str) -> Optional[CacheEntry]:
        key = normalize_path(path)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if not self._is_fresh(entry, now):
                del self._entries[key]
                logger.debug(f"Cache EXPIRED for {key}")
                return None
            self._entries.move_to_end(key)
            return entry

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def put(self, path: str, value: Any, generation: Optional[int] = None) -> Optional[CacheEntry]:
        """
        Store `value` under `path`.

        Callers that fetched `value` from the network pass the `generation`
        read before the fetch; if an invalidation ran in between, the value
        may predate a mutation and is not stored.
        """
        key = normalize_path(path)
        entry = CacheEntry(value=value, inserted_at=self._clock())
        with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug(f"Dropping stale value for {key}: invalidated during fetch")
                return None
            if key in self._entries:
                self._entries.move_to_end(key)
            elif len(self._entries) >= self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Cache full, evicted {evicted}")
            self._entries[key] = entry
        return entry

    def invalidate(self, path: str) -> None:
        """Drop `path` and its parent's listing, which now describes stale children."""
        key = normalize_path(path)
        parent = posixpath.dirname(key)
        with self._lock:
            self._generation += 1
            self._entries.pop(key, None)
            self._entries.pop(parent, None)
        logger.debug(f"Invalidated {key} and parent {parent}")

    def invalidate_prefix(self, path: str) -> None:
        """Drop every entry at or below `path`."""
        key = normalize_path(path)
        prefix = key if key.endswith("/") else key + "/"
        with self._lock:
            self._generation += 1
            stale = [k for k in self._entries if k == key or k.startswith(prefix)]
            for k in stale:
                del self._entries[k]
        if stale:
            logger.debug(f"Invalidated {len(stale)} entries under {key}")

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries.clear()
