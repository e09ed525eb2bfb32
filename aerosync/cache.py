"""In-memory TTL cache shared by data sources, pollers and the report service."""

from __future__ import annotations

import copy
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

from aerosync.domain import DEFAULT_COORDINATE_PRECISION
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="cache")

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    """Stored payload with its absolute expiry on the cache clock."""
    payload: T
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class CacheStats:
    """Entry counts at the time of the call."""
    total: int
    valid: int
    expired: int


def coordinate_key(latitude: float, longitude: float, precision: int = DEFAULT_COORDINATE_PRECISION) -> str:
    """Canonicalize coordinates so near-identical requests share a key."""
    return f"{latitude:.{precision}f},{longitude:.{precision}f}"


def make_key(prefix: str, *parts: Any) -> str:
    """Join a key prefix and parts with ':'."""
    return ":".join([prefix, *(str(p) for p in parts)])


class TTLCache(Generic[T]):
    """Thread-safe, TTL-aware key/value store.

    `get` never returns stale data: an expired entry is evicted on access.
    Payloads are deep-copied on the way in and out so callers can never
    mutate what the cache holds. `max_entries` optionally bounds the cache
    with least-recently-used eviction.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic, max_entries: int | None = None) -> None:
        """Initialize with a monotonic clock (seconds) and an optional size cap."""
        if max_entries is not None and max_entries <= 0:
            raise ValueError("max_entries must be positive when set")
        self._clock = clock
        self._max_entries = max_entries
        self._entries: "OrderedDict[str, CacheEntry[T]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[T]:
        """Return a copy of the cached value, or None if missing/expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if not entry.is_valid(self._clock()):
                self._entries.pop(key, None)
                logger.debug("Evicted expired cache entry", extra={"key": key})
                return None
            self._entries.move_to_end(key)
            return copy.deepcopy(entry.payload)

    def set(self, key: str, value: T, ttl_seconds: float) -> None:
        """Store `value` under `key` for `ttl_seconds`, replacing any existing entry."""
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be non-negative")
        with self._lock:
            self._entries[key] = CacheEntry(payload=copy.deepcopy(value), expires_at=self._clock() + ttl_seconds)
            self._entries.move_to_end(key)
            if self._max_entries is not None:
                while len(self._entries) > self._max_entries:
                    evicted, _ = self._entries.popitem(last=False)
                    logger.debug("Evicted least recently used entry", extra={"key": evicted})

    def get_or_load(self, key: str, ttl_seconds: float, loader: Callable[[], T]) -> T:
        """Return the cached value or call `loader`, caching its result.

        Loader exceptions propagate and nothing is stored. The loader runs
        outside the lock, so concurrent misses may each call it.
        """
        cached = self.get(key)
        if cached is not None:
            return cached
        value = loader()
        self.set(key, value, ttl_seconds)
        return copy.deepcopy(value)

    def delete(self, key: str) -> None:
        """Remove an entry if present."""
        with self._lock:
            self._entries.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        """Remove every entry whose key starts with `prefix`; returns the count."""
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        """Drop every entry."""
        with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        """Count entries without evicting anything."""
        with self._lock:
            now = self._clock()
            total = len(self._entries)
            valid = sum(1 for entry in self._entries.values() if entry.is_valid(now))
        return CacheStats(total=total, valid=valid, expired=total - valid)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            entry = self._entries.get(key)  # type: ignore[arg-type]
            return entry is not None and entry.is_valid(self._clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
